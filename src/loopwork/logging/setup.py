"""
Structured logging setup.

Three independent pipelines:
1. File (JSON) — when config.file is set. Captures everything (DEBUG+).
2. Human handler (stderr) — HUMAN events only: what happens to each run.
3. Technical console (stderr) — DEBUG/INFO, controlled by verbose. Excludes HUMAN.

Default behaviour (verbose=0): the operator only sees HUMAN traces and
warnings. verbose=1 adds INFO, verbose=2 adds DEBUG, quiet silences both
stderr pipelines.
"""

import logging
import sys
from pathlib import Path

import structlog

from ..config.schema import LoggingConfig
from .human import HumanLogHandler
from .levels import HUMAN


def configure_logging(
    config: LoggingConfig,
    json_output: bool = False,
    quiet: bool = False,
) -> None:
    """Configure every logging pipeline.

    Args:
        config: Logging configuration (level, file, verbose).
        json_output: Disable the human and console handlers (machine output).
        quiet: Disable the human and console handlers.
    """
    logging.root.handlers.clear()
    structlog.reset_defaults()

    # Root captures everything; handlers filter by level
    logging.basicConfig(level=logging.DEBUG, format="%(message)s", handlers=[])

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    show_stderr = not quiet and not json_output

    # ── Pipeline 1: JSON file ─────────────────────────────────────────────
    if config.file:
        file_path = Path(config.file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(str(file_path), encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=shared_processors,
        ))
        logging.root.addHandler(file_handler)

    # ── Pipeline 2: Human handler ─────────────────────────────────────────
    if show_stderr and _level_value(config.level) <= HUMAN:
        human_handler = HumanLogHandler(stream=sys.stderr)
        human_handler.setLevel(HUMAN)
        human_handler.addFilter(lambda record: record.levelno == HUMAN)
        logging.root.addHandler(human_handler)

    # ── Pipeline 3: Technical console ─────────────────────────────────────
    if show_stderr:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(_verbose_to_level(config.verbose))
        console_handler.addFilter(lambda record: record.levelno != HUMAN)
        console_handler.setFormatter(structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
            foreign_pre_chain=shared_processors,
        ))
        logging.root.addHandler(console_handler)

    # Event dicts reach the handlers unrendered; each formatter renders its own way
    structlog.configure(
        processors=shared_processors + [
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _level_value(level: str) -> int:
    return {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "human": HUMAN,
        "warn": logging.WARNING,
        "error": logging.ERROR,
    }.get(level, logging.DEBUG)


def _verbose_to_level(verbose: int) -> int:
    """Map the verbose counter to the console handler level.

    0 -> WARNING (human traces go through their own handler)
    1 -> INFO
    2+ -> DEBUG
    """
    levels = {
        0: logging.WARNING,
        1: logging.INFO,
        2: logging.DEBUG,
    }
    return levels.get(verbose, logging.DEBUG)
