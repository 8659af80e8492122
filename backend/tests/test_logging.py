import logging
from pathlib import Path

import pytest

from clinic_chat.config import Settings, get_settings
from clinic_chat.utils.logger import configure_logging, get_logger


@pytest.fixture
def log_settings(tmp_path):
    yield Settings(LOG_DIR=str(tmp_path), APP_DEBUG=False, SOCKET_LOG_LEVEL="error")
    configure_logging(get_settings())


def test_chat_logs_are_split_by_level(log_settings, tmp_path):
    configure_logging(log_settings)
    log = get_logger("chat_service")

    log.info("Message stored")
    log.error("Summary reconciliation failed")
    for handler in logging.getLogger("clinic_chat").handlers:
        handler.flush()

    assert "Message stored" in (tmp_path / "chat.log").read_text()
    errors = (tmp_path / "chat-errors.log").read_text()
    assert "Summary reconciliation failed" in errors
    assert "Message stored" not in errors


def test_reconfigure_does_not_duplicate_handlers(log_settings):
    configure_logging(log_settings)
    root = configure_logging(log_settings)

    assert len(root.handlers) == 3


def test_socket_library_loggers_share_the_files(log_settings, tmp_path):
    configure_logging(log_settings)
    engineio = logging.getLogger("engineio")

    assert engineio.level == logging.ERROR
    assert not engineio.propagate
    assert {Path(h.baseFilename).name for h in engineio.handlers} == {"chat.log", "chat-errors.log"}
