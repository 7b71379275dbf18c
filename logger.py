from datetime import datetime
from pathlib import Path

from loguru import logger


def setup_logging(root: str, level: str = "INFO", retention_days: int = 30):
    """File sink under ``<root>/YYYY/MM/DD/lims.log`` rotated at midnight, plus the console."""
    logdir = Path(root) / datetime.now().strftime("%Y/%m/%d")
    logdir.mkdir(parents=True, exist_ok=True)
    logger.remove()
    logger.add(
        str(logdir / "lims.log"),
        rotation="00:00",
        retention=f"{retention_days} days",
        level=level,
        enqueue=True,
        backtrace=True,
        diagnose=False,
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}",
    )
    logger.add(lambda m: print(m, end=""), level=level, format="{time:HH:mm:ss} | {level: <8} | {message}")
    return logger
