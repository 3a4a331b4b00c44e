"""Client-side record identifiers."""

from __future__ import annotations

import logging
from uuid import uuid4

from .errors import IdentityCollisionError, IdentityUnavailableError

_LOGGER = logging.getLogger(__name__)


def generate_id() -> str:
    """Return a random RFC 4122 version 4 identifier.

    The value comes from the OS CSPRNG. When no entropy source is available
    the call fails instead of degrading to a timestamp based scheme.
    """

    try:
        return str(uuid4())
    except (NotImplementedError, OSError) as err:
        raise IdentityUnavailableError(f"entropy source unavailable: {err}", reason="no_entropy") from err


class IdGenerator:
    """Issue identifiers and refuse to hand out the same value twice.

    Only ids that have not reached the remote store yet are tracked; the
    coordinator releases an id once its row is confirmed or discarded.
    """

    def __init__(self) -> None:
        self._issued: set[str] = set()

    def generate(self) -> str:
        record_id = generate_id()
        self.claim(record_id)
        return record_id

    def claim(self, record_id: str) -> None:
        """Reserve a caller supplied identifier."""

        if record_id in self._issued:
            _LOGGER.error("Identifier %s issued twice; aborting create", record_id)
            raise IdentityCollisionError(f"identifier {record_id} already issued", reason="id_collision")
        self._issued.add(record_id)

    def release(self, record_id: str) -> None:
        self._issued.discard(record_id)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._issued


__all__ = ["IdGenerator", "generate_id"]
