import logging
from typing import Iterable, Optional, Set

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
MASK = "***"


class SecretMaskingFilter(logging.Filter):
    """Replace registered secret values in log records with a mask."""

    def __init__(self):
        super().__init__()
        self._secrets: Set[str] = set()

    def add(self, *values: Optional[str]) -> None:
        for value in values:
            # Very short values would mask unrelated text
            if value and len(value) >= 4:
                self._secrets.add(value)

    def clear(self) -> None:
        self._secrets.clear()

    def mask(self, text: str) -> str:
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self._secrets:
            record.msg = self.mask(record.getMessage())
            record.args = None
        return True


secret_filter = SecretMaskingFilter()


def register_secrets(values: Iterable[Optional[str]]) -> None:
    secret_filter.add(*values)


def setup_logging(level=logging.INFO, log_file: Optional[str] = None):
    """Setup basic logging configuration. Secrets registered earlier are forgotten."""
    secret_filter.clear()
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.addFilter(secret_filter)

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    return logging.getLogger("appdeploy")
