import json
import logging
import sys
import traceback
from typing import Optional

import loguru
from loguru import logger

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<bold><white>{message}</white></bold> | <dim>{extra}</dim> {stacktrace}"
)


# configure_logger() is called from src/usercache/__init__.py on import.
def configure_logger(level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure loguru logger with a stdout sink and an optional file sink.

    Args:
        level: Minimum level for the stdout sink
        log_file: Optional path of a rotating log file (local development)
    """
    # Suppress verbose SDK / transport logging that goes through stdlib logging
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logger.remove()  # remove the default logger

    # stdout handler (always enabled for console output)
    logger.add(
        sink=sys.stdout,
        level=level,
        diagnose=False,
        format=DEFAULT_FORMAT,
        filter=process_log_record,
    )

    if log_file:
        try:
            logger.add(
                sink=log_file,
                level=level,
                rotation="10 MB",
                retention=5,
                serialize=True,
            )
            logger.info("File logging enabled", log_file=log_file)
        except OSError as e:
            logger.warning(f"Failed to initialize file logging: {e}")


def process_log_record(record: "loguru.Record") -> "loguru.Record":
    r"""
    Inject transformed metadata into each log record before it is passed to the formatter.

    1. Serialize the "extra" field to JSON so it renders on one line in log aggregators.
    2. For error logs, add a traceback with \r instead of \n so that the aggregator does not
       split the traceback into multiple log events.
    """
    extra = record["extra"]

    if extra:
        record["extra"] = json.dumps(extra, default=str)

    record["stacktrace"] = ""
    if record["exception"]:
        err = record["exception"]
        stacktrace = get_formatted_stacktrace(err, replace_newline_character_with_carriage_return=True)
        record["stacktrace"] = stacktrace

    return record


def get_formatted_stacktrace(loguru_record_exception, replace_newline_character_with_carriage_return: bool) -> str:
    """Get the formatted stacktrace for the current exception."""
    exc_type, exc_value, exc_traceback = loguru_record_exception
    stacktrace_: list[str] = traceback.format_exception(exc_type, exc_value, exc_traceback)
    stacktrace: str = "".join(stacktrace_)
    if replace_newline_character_with_carriage_return:
        stacktrace = stacktrace.replace("\n", "\r")
    return stacktrace
