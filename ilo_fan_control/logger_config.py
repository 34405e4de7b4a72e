"""
Logging configuration with colored console output
Makes the polling, actuation and scheduler loops easy to follow in a terminal
"""

import logging
import sys
from colorama import Fore, Style, init

# colorama needs init() on Windows consoles
init(autoreset=True)

PACKAGE_LOGGER = "ilo_fan_control"


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name"""

    COLORS = {
        'DEBUG': Fore.CYAN,
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.RED + Style.BRIGHT,
    }

    def format(self, record):
        # Work on a copy so other handlers see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{Style.RESET_ALL}"

        return super().format(record)


def parse_level(level) -> int:
    """Accepts either a logging constant or a name such as "debug"."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logger(name: str = PACKAGE_LOGGER, level=logging.INFO) -> logging.Logger:
    """
    Configures a logger with colored console output

    Args:
        name: Logger name (module loggers below it propagate here)
        level: Logging level (DEBUG, INFO, WARNING, ERROR) or its name

    Returns:
        Configured logger
    """
    level = parse_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid duplicate handlers when called twice (reloads, tests)
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    # Format: [2025-03-02 15:30:45] INFO ilo_fan_control.sensors: message
    formatter = ColoredFormatter(
        fmt='[%(asctime)s] %(levelname)s %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger
