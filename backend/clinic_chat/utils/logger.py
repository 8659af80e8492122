"""
Logging for the chat backend.

Everything logs under the ``clinic_chat`` logger: the console, a rotating
``chat.log`` and a rotating ``chat-errors.log``. The python-socketio and
engineio loggers share the file handlers so transport failures land next to
the gateway's own records, but they are held at ``SOCKET_LOG_LEVEL``.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from clinic_chat.config import Settings, get_settings

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

SOCKET_LIBRARY_LOGGERS = ("socketio", "engineio")


def _rotating(path: Path, level: int, settings: Settings) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=settings.LOG_MAX_BYTES, backupCount=settings.LOG_BACKUP_COUNT)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def configure_logging(settings: Settings) -> logging.Logger:
    """(Re)build the handlers; safe to call twice, old handlers are dropped."""
    logs_dir = Path(settings.LOG_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)
    level = logging.DEBUG if settings.APP_DEBUG else logging.INFO

    root = logging.getLogger("clinic_chat")
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(console)

    app_file = _rotating(logs_dir / "chat.log", logging.INFO, settings)
    error_file = _rotating(logs_dir / "chat-errors.log", logging.ERROR, settings)
    root.addHandler(app_file)
    root.addHandler(error_file)

    for name in SOCKET_LIBRARY_LOGGERS:
        lib = logging.getLogger(name)
        lib.setLevel(settings.SOCKET_LOG_LEVEL.upper())
        lib.handlers = [app_file, error_file]
        lib.propagate = False

    return root


logger = configure_logging(get_settings())


def get_logger(name: str = None) -> logging.Logger:
    """Child of the ``clinic_chat`` logger, e.g. ``get_logger("socket")``."""
    if name:
        return logger.getChild(name)
    return logger
