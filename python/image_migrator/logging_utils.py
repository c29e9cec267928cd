import logging
import traceback
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def setup_logging(level: int = logging.INFO, fmt: Optional[str] = None) -> None:
    """Configure root logging once. Later calls only change the level,
    so ``--verbose`` still works after a module logger was created.
    """
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return
    logging.basicConfig(level=level, format=fmt or DEFAULT_FORMAT)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a module/logger by name, after ensuring logging is configured."""
    if not logging.getLogger().handlers:
        setup_logging()
    return logging.getLogger(name) if name else logging.getLogger(__name__)


def log_item_failure(logger: logging.Logger, repo: str, tag: Optional[str], operation: str, error: Exception) -> None:
    """Log a failed repository/tag operation on one line.

    The item is named as ``repo:tag`` (or just ``repo``) followed by the
    operation and the error's short message, so failures can be grepped from
    a long migration log.
    """
    item = f"{repo}:{tag}" if tag else repo
    detail = getattr(error, "details", {}).get("error") or getattr(error, "message", None) or str(error)
    logger.error(f"Failed {operation} for {item}: {detail}")


def log_exception(logger: logging.Logger, message: str = "An error occurred", exc_info: Exception = None) -> None:
    """Centralized exception logging with full traceback.

    Args:
        logger: Logger instance to use
        message: Custom error message to log before the traceback
        exc_info: Exception instance (if None, uses current exception context)
    """
    logger.error(message)
    if exc_info is not None:
        logger.error(f"Exception type: {type(exc_info).__name__}")
        logger.error(f"Exception message: {str(exc_info)}")
    logger.error("Full traceback:")
    logger.error(traceback.format_exc())
