import logging
import sys
from configparser import RawConfigParser
from contextlib import contextmanager
from logging import Logger
from logging import config as logging_config
from typing import Dict, Generator, List, Optional, Tuple

from measure_pcr import config

# Default logging configuration. journald already records the time stamp and
# the unit name, so only the level is added to the message.
DEFAULT_LOGGING_CONFIG = {
    "version": 1,
    "root": {"level": "INFO", "handlers": ["consoleHandler"]},
    "loggers": {
        "measure_pcr": {
            "level": "INFO",
        },
    },
    "handlers": {
        "consoleHandler": {
            "class": "logging.StreamHandler",
            "level": "DEBUG",
            "formatter": "formatter_formatter",
            "stream": "ext://sys.stdout",
        }
    },
    "formatters": {
        "formatter_formatter": {
            "format": "%(levelname)s: %(message)s",
        },
    },
}

try:
    logging_config.dictConfig(DEFAULT_LOGGING_CONFIG)
except KeyError:
    logging.basicConfig(format="%(levelname)s: %(message)s", level=logging.INFO)


STREAMS = {
    "stdout": lambda: sys.stdout,
    "stderr": lambda: sys.stderr,
}


def _level(options: Dict[str, str]) -> int:
    name = options.get("level", "NOTSET").strip().upper()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        raise ValueError(f"Unknown logging level: {name}")
    return level


def _names(value: str) -> List[str]:
    return [name.strip() for name in value.split(",") if name.strip()]


def _build_formatters(raw_config: RawConfigParser) -> Dict[str, logging.Formatter]:
    formatters = {}
    for section in raw_config.sections():
        if not section.startswith("formatter_"):
            continue
        options = dict(raw_config.items(section))
        formatters[section[len("formatter_") :]] = logging.Formatter(
            options.get("format", "%(levelname)s: %(message)s"), options.get("datefmt")
        )
    return formatters


def _build_handler(options: Dict[str, str], formatters: Dict[str, logging.Formatter]) -> logging.Handler:
    """Create a handler from a ``handler_*`` section.

    Only console and file output are supported:

    * ``class = StreamHandler`` with ``stream = stdout`` (default) or ``stderr``;
    * ``class = FileHandler`` with ``filename = <path>``.
    """
    handler_class = options.get("class", "StreamHandler").rsplit(".", 1)[-1]

    handler: logging.Handler
    if handler_class == "StreamHandler":
        stream = options.get("stream", "stdout")
        if stream not in STREAMS:
            raise ValueError(f"Unsupported stream: {stream}")
        handler = logging.StreamHandler(STREAMS[stream]())
    elif handler_class == "FileHandler":
        if "filename" not in options:
            raise ValueError("FileHandler requires a filename")
        handler = logging.FileHandler(options["filename"])
    else:
        raise ValueError(f"Unsupported handler class: {handler_class}")

    handler.setLevel(_level(options))
    formatter = options.get("formatter")
    if formatter in formatters:
        handler.setFormatter(formatters[formatter])
    return handler


def _apply_logger(logger: Logger, options: Dict[str, str], handlers: Dict[str, logging.Handler]) -> None:
    logger.setLevel(_level(options))
    if "propagate" in options:
        logger.propagate = options["propagate"].strip() == "1"
    logger.handlers = [handlers[name] for name in _names(options.get("handlers", "")) if name in handlers]


def _configure_logging_from_raw(raw_config: RawConfigParser) -> None:
    """Apply the ``formatter_*``, ``handler_*`` and ``logger_*`` sections.

    ``logger_root`` configures the root logger, any other ``logger_<name>``
    section the logger called ``<name>``.
    """
    formatters = _build_formatters(raw_config)

    handlers = {}
    for section in raw_config.sections():
        if section.startswith("handler_"):
            handlers[section[len("handler_") :]] = _build_handler(dict(raw_config.items(section)), formatters)

    for section in raw_config.sections():
        if not section.startswith("logger_"):
            continue
        name = section[len("logger_") :]
        logger = logging.getLogger() if name == "root" else logging.getLogger(name)
        _apply_logger(logger, dict(raw_config.items(section)), handlers)


def _snapshot() -> Dict[str, Tuple[List[logging.Handler], int, bool]]:
    loggers: Dict[str, Logger] = {
        name: logger for name, logger in logging.Logger.manager.loggerDict.items() if isinstance(logger, Logger)
    }
    loggers[""] = logging.getLogger()
    return {name: (list(logger.handlers), logger.level, logger.propagate) for name, logger in loggers.items()}


@contextmanager
def _safe_logging_configuration() -> Generator[None, None, None]:
    """Undo the changes made to the loggers if the configuration fails."""
    saved = _snapshot()
    try:
        yield
    except Exception:
        for name, (handlers, level, propagate) in saved.items():
            logger = logging.getLogger(name) if name else logging.getLogger()
            logger.handlers = handlers
            logger.setLevel(level)
            logger.propagate = propagate
        raise


def _safe_get_config(component: str) -> Optional[RawConfigParser]:
    try:
        return config.get_config(component)
    except Exception:
        return None


def init_logging(loggername: str) -> Logger:
    """
    Returns the logger for a module of the validator, applying the logging
    configuration file when there is one.

    Args:
        loggername (str): The name of the module logger.

    Returns:
        Logger: The initialized logger instance.
    """
    logger = logging.getLogger(f"measure_pcr.{loggername}")

    logging_conf = _safe_get_config("logging")
    if logging_conf and logging_conf.sections():
        try:
            with _safe_logging_configuration():
                _configure_logging_from_raw(logging_conf)
        except Exception as e:
            logger.error("Logging configuration error: %s", e)

    return logger


def set_verbose(verbose: bool) -> None:
    """Switch the validator loggers between INFO and DEBUG."""
    logging.getLogger("measure_pcr").setLevel(logging.DEBUG if verbose else logging.INFO)
