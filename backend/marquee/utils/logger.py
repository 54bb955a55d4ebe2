import logging
import os

logger = logging.getLogger("marquee")
logger.setLevel(os.getenv("MARQUEE_LOG_LEVEL", "INFO").upper())

if not logger.handlers:
    console_handler = logging.StreamHandler()
    formatter = logging.Formatter("[%(levelname)s] %(asctime)s - %(name)s - %(message)s", "%Y-%m-%d %H:%M:%S")
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
