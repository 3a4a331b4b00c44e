from __future__ import annotations

import logging
import time

_LAST: dict[str, float] = {}
_MAX_CODES = 1024
_WINDOW = 60.0


def log_limited(logger: logging.Logger, level: int, code: str, msg: str, *args, window: float = _WINDOW) -> bool:
    """Log a message for ``code`` no more than once per window.

    Returns ``True`` when the message was emitted. The cache of codes is capped
    and the oldest entry is discarded when full.
    """
    now = time.monotonic()
    last = _LAST.get(code)
    if last is not None and now - last <= window:
        return False
    if last is None and len(_LAST) >= _MAX_CODES:
        oldest = min(_LAST, key=_LAST.get)
        _LAST.pop(oldest, None)
    _LAST[code] = now
    logger.log(level, msg, *args)
    return True


def reset_limits() -> None:
    _LAST.clear()
