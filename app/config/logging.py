"""
Logging configuration.

Configures the loguru logger for ledger process hosts (workers and
scheduler). Sets up log rotation and retention policies.
"""

from loguru import logger


def setup_logging(name: str = "ledger", level: str = "INFO") -> None:
    """
    Configure logger with file rotation.

    Args:
        name: Log file name under logs/
        level: Minimum level written to the file
    """
    logger.add(
        f"logs/{name}.log",
        rotation="1 day",
        retention="7 days",
        level=level,
        encoding="utf-8",
    )

    logger.info(f"Starting commission ledger {name}...")
