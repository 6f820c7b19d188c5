# engine_logging.py

import logging
import time

# --- Logging Setup ---
logger = logging.getLogger("JourneyEngine")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.setLevel(logging.INFO)
logger.propagate = False # Prevent duplicate logs if root logger is configured


def get_logger(component: str) -> logging.Logger:
    """Child logger sharing the engine handler (e.g. 'JourneyEngine.flow')."""
    return logger.getChild(component)


def configure_logging(debug: bool):
    """Configures the engine logger level based on the debug flag."""
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)
    logger.info(f"Journey engine logging level set to {logging.getLevelName(log_level)}")
