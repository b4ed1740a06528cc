import logging
import sys
from typing import Optional

from reminder_engine.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Configure root logging for a worker process (stdout plus optional file)."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = log_file or settings.LOG_FILE
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # requests/urllib3 are chatty at INFO for every gateway call
    logging.getLogger("urllib3").setLevel(logging.WARNING)
