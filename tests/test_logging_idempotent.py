import logging
import os
import sys

from nebularnews.utils import configure_logging


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "logs" / "app.log"
    monkeypatch.setenv("NN_LOG_LEVEL", "INFO")
    monkeypatch.setenv("NN_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("nebularnews.worker")
        configure_logging("nebularnews.worker")

        stream_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len(stream_handlers) == 1
        assert stream_handlers[0].stream is sys.stdout
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
    monkeypatch.delenv("NN_LOG_FILE", raising=False)
    monkeypatch.setenv("NN_LOG_LEVELS", "nebularnews.feeds=DEBUG, nebularnews.pull=warning")

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    try:
        configure_logging("nebularnews.cli")
        assert logging.getLogger("nebularnews.feeds").level == logging.DEBUG
        assert logging.getLogger("nebularnews.pull").level == logging.WARNING
    finally:
        root.handlers = original_handlers
        logging.getLogger("nebularnews.feeds").setLevel(logging.NOTSET)
        logging.getLogger("nebularnews.pull").setLevel(logging.NOTSET)
