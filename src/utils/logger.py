import os
import sys
from pathlib import Path

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def setup_logger(
    *,
    json_logs: bool = False,
    level: str = "INFO",
    log_dir: str = "logs",
    retention_days: int = 7,
) -> None:
    """Configure loguru for the vetting process.

    LOG_LEVEL env overrides the console level. The file sink always
    captures DEBUG so per-address skips and provider errors can be traced
    after the fact.
    """
    console_level = os.getenv("LOG_LEVEL", level).upper()
    logger.remove()

    if json_logs:
        logger.add(sys.stdout, serialize=True, level=console_level)
    else:
        logger.add(sys.stdout, format=_CONSOLE_FORMAT, level=console_level, colorize=True)

    if not log_dir:
        return
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    logger.add(
        str(Path(log_dir) / "vetting_{time:YYYY-MM-DD}.log"),
        rotation="50 MB",
        retention=f"{retention_days} days",
        compression="gz",
        level="DEBUG",
        serialize=json_logs,
        enqueue=True,
    )
