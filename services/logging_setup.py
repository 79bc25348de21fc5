"""
Logging setup
Rotating file log with optional JSON lines, plus an optional console handler
"""
import json
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Optional

from models.settings import LoggingSettings

LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'time': datetime.fromtimestamp(record.created).astimezone().isoformat(),
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': record.getMessage(),
        }
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry)


def parse_level(name: str) -> int:
    return LEVELS.get((name or 'info').lower(), logging.INFO)


def configure_logging(settings: Optional[LoggingSettings] = None, verbose: bool = False) -> logging.Logger:
    """Install handlers on the root logger according to the logging settings"""
    settings = settings or LoggingSettings()
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    level = logging.DEBUG if verbose else parse_level(settings.level)
    root.setLevel(level)
    formatter = JSONFormatter() if settings.json_format else logging.Formatter(TEXT_FORMAT)

    if settings.file:
        log_path = Path(settings.file).expanduser()
        log_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=settings.max_size_mb * 1024 * 1024,
            backupCount=settings.max_files,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if settings.console or verbose:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    if not root.handlers:
        root.addHandler(logging.NullHandler())
    return root
