import logging
import sys
from pathlib import Path
from typing import Optional, Union

import colorlog

from quota_broker.utils.paths import get_logs_dir

_CONSOLE_FORMAT = "%(log_color)s%(message)s"
_FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# Create a filter to ensure the debug handler ONLY gets DEBUG messages from the quota_broker
class BrokerDebugFilter(logging.Filter):
    def filter(self, record):
        return record.levelno == logging.DEBUG and record.name.startswith("quota_broker")


# Keep LiteLLM chatter off the console
class NoLiteLLMLogFilter(logging.Filter):
    def filter(self, record):
        return not record.name.startswith("LiteLLM")


def configure_logging(
    root: Optional[Union[str, Path]] = None, verbose: bool = False
) -> Path:
    """
    Configure console and file logging for the broker application.

    Console: colored, INFO and above (DEBUG with `verbose`).
    logs/broker.log: INFO and above from every logger.
    logs/broker_debug.log: DEBUG records from the quota_broker library only.

    Returns:
        The logs directory
    """
    log_dir = get_logs_dir(root)

    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            _CONSOLE_FORMAT,
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    console_handler.addFilter(NoLiteLLMLogFilter())

    info_file_handler = logging.FileHandler(log_dir / "broker.log", encoding="utf-8")
    info_file_handler.setLevel(logging.INFO)
    info_file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))

    debug_file_handler = logging.FileHandler(log_dir / "broker_debug.log", encoding="utf-8")
    debug_file_handler.setLevel(logging.DEBUG)
    debug_file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
    debug_file_handler.addFilter(BrokerDebugFilter())

    # Get the root logger and set it to DEBUG to capture all messages
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in (info_file_handler, console_handler, debug_file_handler):
        root_logger.addHandler(handler)

    # Silence other noisy loggers by setting their level higher than root
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)

    return log_dir
