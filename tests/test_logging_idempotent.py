import logging
import os
import sys

from jobrelay.utils import configure_logging


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("JR_LOG_LEVEL", "INFO")
    monkeypatch.setenv("JR_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("jobrelay.worker")
        configure_logging("jobrelay.worker")

        stream_handlers = [
            handler
            for handler in root.handlers
            if type(handler) is logging.StreamHandler
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert any(handler.stream is sys.stdout for handler in stream_handlers)
        assert len([h for h in stream_handlers if h.stream is sys.stdout]) == 1
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(
            str(log_file)
        )
    finally:
        for handler in root.handlers:
            if handler not in original_handlers:
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)


def test_per_logger_overrides(monkeypatch):
    monkeypatch.setenv("JR_LOG_LEVELS", "jobrelay.dispatch=debug, jobrelay.ingest=WARNING,broken")
    dispatch_logger = logging.getLogger("jobrelay.dispatch")
    ingest_logger = logging.getLogger("jobrelay.ingest")
    previous = (dispatch_logger.level, ingest_logger.level)
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    try:
        configure_logging("jobrelay.worker")
        assert dispatch_logger.level == logging.DEBUG
        assert ingest_logger.level == logging.WARNING
    finally:
        dispatch_logger.setLevel(previous[0])
        ingest_logger.setLevel(previous[1])
        root.handlers = original_handlers
