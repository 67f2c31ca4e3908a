import logging
from pathlib import Path

import pytest

from audioshare.logging_utils import build_handlers, configure_logging, resolve_level
from audioshare.services.events import emit_db_event, emit_task_event, normalize_context


@pytest.fixture()
def root_logger():
    logger = logging.getLogger()
    saved_handlers = list(logger.handlers)
    saved_level = logger.level
    yield logger
    for handler in list(logger.handlers):
        if handler not in saved_handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(saved_level)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("debug", logging.DEBUG),
        (" WARNING ", logging.WARNING),
        ("15", 15),
        (logging.ERROR, logging.ERROR),
        ("", logging.INFO),
        ("chatty", logging.INFO),
    ],
)
def test_resolve_level(value, expected) -> None:
    assert resolve_level(value) == expected


def test_configure_logging_writes_log_file_and_replaces_handlers(
    root_logger: logging.Logger, tmp_path: Path
) -> None:
    storage = tmp_path / "storage"

    configure_logging("debug", handlers=build_handlers(storage, stream=False))
    configure_logging("info", handlers=build_handlers(storage, stream=False))
    logging.getLogger("audioshare.test").info("indexed %d files", 3)
    for handler in root_logger.handlers:
        handler.flush()

    owned = [h for h in root_logger.handlers if isinstance(h, logging.FileHandler)]
    assert len(owned) == 1
    assert root_logger.level == logging.INFO
    content = (storage / "audio_share.log").read_text(encoding="utf-8")
    assert content.count("indexed 3 files") == 1
    assert "[INFO] audioshare.test" in content


def test_normalize_context_drops_empty_values() -> None:
    assert normalize_context({"a": "", "b": None, "c": " x ", "d": [1, 2], "": 5}) == {
        "c": "x",
        "d": "1, 2",
    }


def test_task_event_carries_phase(caplog) -> None:
    caplog.set_level(logging.INFO, logger="audio_share.events")

    emit_task_event("completed", "Reindex completed", payload={"folders": 2}, duration_ms=12.345)

    record = caplog.records[-1]
    assert record.getMessage() == (
        "[TASK_STATE] Reindex completed (folders=2, phase=completed, duration_ms=12.35)"
    )
    assert record.debug_event_type == "TASK_STATE"
    assert record.debug_payload == {"folders": 2, "phase": "completed"}


def test_db_events_default_to_debug(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="audio_share.events")

    emit_db_event("folders.upsert", payload={"table": "folders"})

    assert caplog.records[-1].levelno == logging.DEBUG
    assert caplog.records[-1].getMessage().startswith("[DB_QUERY] folders.upsert")


def test_long_values_are_truncated() -> None:
    value = normalize_context({"path": "x" * 500})["path"]

    assert len(value) == 201
    assert value.endswith("…")
