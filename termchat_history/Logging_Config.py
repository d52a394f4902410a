# Logging_Config.py
# Description: Configuration for logging
#
# Imports
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
from .Metrics.metrics_logger import METRIC_LEVEL
#
########################################################################################################################
#
# Functions:

_configured_sink_ids = []


class InterceptHandler(logging.Handler):
    """Routes stdlib `logging` records (the SQLite layer, httpx) into loguru."""

    def emit(self, record: logging.LogRecord):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def retention_function(files):
    """
    Keeps at most 5 rotated log files: returns the oldest ones beyond that for removal.
    """
    if len(files) > 5:
        files.sort(key=lambda filename: os.path.getmtime(filename))
        return files[:-5]
    return []


def json_formatter(record) -> str:
    """One JSON object per METRIC record, with the fields bound by metrics_logger."""
    extra = record["extra"]

    def serialize(value):
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    log_record = {
        "time": record["time"].strftime("%Y-%m-%d %H:%M:%S.%f"),
        "levelname": record["level"].name,
        "name": record["name"],
        "message": record["message"],
        "event": extra.get("event"),
        "type": extra.get("type"),
        "value": extra.get("value"),
        "labels": extra.get("labels"),
        "timestamp": serialize(extra.get("timestamp")),
    }
    # loguru treats the returned string as a format template.
    return json.dumps(log_record, default=str).replace("{", "{{").replace("}", "}}") + "\n"


def configure_logging(level: str = "INFO",
                      log_file: Optional[Union[str, Path]] = None,
                      metrics_file: Optional[Union[str, Path]] = None):
    """
    Sets up loguru sinks: stderr, an optional rotating text log and an optional JSON file that only
    receives METRIC records. Stdlib logging is routed into the same sinks.
    """
    for sink_id in _configured_sink_ids:
        try:
            logger.remove(sink_id)
        except ValueError:
            pass
    _configured_sink_ids.clear()
    try:
        logger.remove(0)  # loguru's default stderr sink
    except ValueError:
        pass

    level = level.upper()
    _configured_sink_ids.append(logger.add(
        sys.stderr,
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        filter=lambda record: record["level"].name != METRIC_LEVEL,
    ))

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _configured_sink_ids.append(logger.add(
            str(log_path),
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            rotation="10 MB",
            retention=retention_function,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        ))
        logger.info(f"Application logs will be written to: {log_path}")

    if metrics_file:
        metrics_path = Path(metrics_file).expanduser()
        metrics_path.parent.mkdir(parents=True, exist_ok=True)
        _configured_sink_ids.append(logger.add(
            str(metrics_path),
            level=METRIC_LEVEL,
            format=json_formatter,
            filter=lambda record: record["level"].name == METRIC_LEVEL,
            rotation="10 MB",
            retention=retention_function,
            enqueue=True,
        ))
        logger.info(f"JSON metrics will be written to: {metrics_path}")

    std_level = logging.getLevelName(level)
    if not isinstance(std_level, int):  # loguru-only levels (TRACE, SUCCESS)
        std_level = logging.NOTSET
    logging.basicConfig(handlers=[InterceptHandler()], level=std_level, force=True)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    return logger

#
# End of Logging_Config.py
########################################################################################################################
