import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that drown out board logs at INFO
NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine")


def setup_logging(debug: bool = False) -> logging.Logger:
    """Route every magnetboard logger to stdout; DEBUG level when debug is set."""
    level = logging.DEBUG if debug else logging.INFO
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    handler = next((h for h in root_logger.handlers if getattr(h, "_magnetboard", False)), None)
    if handler is None:
        # create_app may run more than once per process (tests, --reload)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handler._magnetboard = True
        root_logger.addHandler(handler)
    handler.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
