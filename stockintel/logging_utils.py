"""
Loguru setup for the intelligence pipeline, plus the structured one-line
loggers for reports, syntheses and contained errors.
"""
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def _is_intelligence(record: Dict[str, Any]) -> bool:
    message = record["message"]
    return message.startswith("REPORT |") or message.startswith("SYNTHESIS |")


# (file, minimum level, retention override, filter)
FILE_SINKS: Tuple[Tuple[str, str, Optional[str], Optional[Callable[[Dict[str, Any]], bool]]], ...] = (
    ("runtime.log", "INFO", None, None),
    ("errors.log", "ERROR", "60 days", None),
    ("intelligence.log", "INFO", "90 days", _is_intelligence),
)


def setup_logging(
    logs_dir: str,
    level: str = "INFO",
    rotation: str = "1 day",
    retention: str = "30 days",
    format_type: str = "text",
    enable_console: bool = True
) -> None:
    """
    Configure loguru sinks.

    The console sink writes to stderr so command output on stdout stays
    machine-readable. File sinks rotate and compress; `intelligence.log`
    only receives the REPORT and SYNTHESIS lines.

    Args:
        logs_dir: Directory for log files
        level: Console level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        rotation: When to rotate log files (e.g. "1 day", "100 MB")
        retention: Default retention for rotated files
        format_type: "text" or "json" (serialized records)
        enable_console: Whether to add the stderr sink
    """
    Path(logs_dir).mkdir(parents=True, exist_ok=True)
    serialize = format_type == "json"

    logger.remove()

    if enable_console:
        logger.add(sys.stderr, format=LOG_FORMAT, level=level, colorize=not serialize, serialize=serialize)

    sinks = list(FILE_SINKS)
    if level == "DEBUG":
        sinks.append(("debug.log", "DEBUG", "7 days", None))

    for filename, sink_level, sink_retention, sink_filter in sinks:
        logger.add(
            os.path.join(logs_dir, filename),
            format=LOG_FORMAT,
            level=sink_level,
            rotation=rotation,
            retention=sink_retention or retention,
            compression="zip",
            enqueue=True,
            serialize=serialize,
            filter=sink_filter,
        )

    logger.info(f"Logging initialized: level={level}, dir={logs_dir}, format={format_type}")


def setup_logging_from_config(config: Dict[str, Any]) -> None:
    """Configure logging from the `logging` section of the app config."""
    section = config.get('logging', {})
    setup_logging(
        logs_dir=section.get('logs_dir', './logs'),
        level=section.get('level', 'INFO'),
        rotation=section.get('rotation', '1 day'),
        retention=section.get('retention', '30 days'),
        format_type=section.get('format', 'text'),
        enable_console=section.get('console', True)
    )


def _fields(**kwargs: Any) -> str:
    return " | ".join(f"{k}={v}" for k, v in kwargs.items())


def log_report(symbol: str, report: Any) -> None:
    """One line per gathered report: source, symbol, confidence, summary head."""
    logger.info(
        f"REPORT | {report.source.value} | {symbol} | "
        f"confidence={report.confidence} | {report.summary[:120]}"
    )


def log_synthesis(symbol: str, confidence: int, probabilities: Dict[str, int], **kwargs: Any) -> None:
    msg = (
        f"SYNTHESIS | {symbol} | confidence={confidence} | "
        f"bull={probabilities.get('bull')} base={probabilities.get('base')} bear={probabilities.get('bear')}"
    )
    if kwargs:
        msg += f" | {_fields(**kwargs)}"
    logger.info(msg)


def log_error_with_context(error: BaseException, context: str, **kwargs: Any) -> None:
    """
    Log a contained error on one line, with its traceback at DEBUG.

    Args:
        error: The exception
        context: Where it happened (e.g. "news-sentiment gather")
        **kwargs: Extra fields such as symbol
    """
    msg = f"ERROR | {context} | {type(error).__name__}: {error}"
    if kwargs:
        msg += f" | {_fields(**kwargs)}"
    logger.error(msg)
    logger.opt(exception=error).debug(f"Traceback for {context}")
