import logging
import os
from typing import Optional

ROOT_LOGGER = "bitredict"

# Third-party loggers and the level they are held at regardless of LOG_LEVEL.
_QUIET = {
    "web3.providers": logging.WARNING,
    "web3.manager": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "apscheduler.executors": logging.WARNING,
}


class _ComponentFilter(logging.Filter):
    """Stamps every record with the running component (ingestor, settlement, ...)."""

    component = "-"

    def filter(self, record: logging.LogRecord) -> bool:
        record.component = self.component
        return True


_component_filter = _ComponentFilter()


def _level(env_name: str, default: int) -> int:
    return getattr(logging, (os.getenv(env_name) or "").strip().upper(), default)


def _configure():
    level = _level("LOG_LEVEL", logging.INFO)

    handler = logging.StreamHandler()
    handler.addFilter(_component_filter)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(component)s %(name)s: %(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name, floor in _QUIET.items():
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.propagate = True
        lg.setLevel(max(level, floor))

    # SQL echo stays off unless asked for explicitly.
    logging.getLogger("sqlalchemy.engine").setLevel(_level("SQL_LOG_LEVEL", logging.WARNING))


_configure()


def set_component(name: str) -> None:
    _component_filter.component = name


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not name:
        return logging.getLogger(ROOT_LOGGER)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
