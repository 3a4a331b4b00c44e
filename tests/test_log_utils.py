import logging

from bookkeeper.utils import log_utils


def test_log_limited_suppresses_repeats(caplog, monkeypatch) -> None:
    clock = iter([100.0, 110.0, 200.0])
    monkeypatch.setattr(log_utils.time, "monotonic", lambda: next(clock))
    logger = logging.getLogger("bookkeeper.test")

    with caplog.at_level(logging.WARNING, logger="bookkeeper.test"):
        assert log_utils.log_limited(logger, logging.WARNING, "queue", "offline %s", 1)
        assert not log_utils.log_limited(logger, logging.WARNING, "queue", "offline %s", 2)
        assert log_utils.log_limited(logger, logging.WARNING, "queue", "offline %s", 3)

    assert [record.getMessage() for record in caplog.records] == ["offline 1", "offline 3"]
