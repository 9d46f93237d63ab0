import logging
import os
import sys

LOGLEVEL = os.environ.get("LOGLEVEL", "INFO").upper()

# INFO and below go to stdout, everything above to stderr
stdout_handler = logging.StreamHandler(sys.stdout)
stdout_handler.setLevel(logging.DEBUG)
stdout_handler.addFilter(lambda record: record.levelno <= logging.INFO)
stderr_handler = logging.StreamHandler(sys.stderr)
stderr_handler.setLevel(logging.WARNING)

formatter = logging.Formatter("%(levelname)-8s %(asctime)s [%(module)s]  %(message)s")
stdout_handler.setFormatter(formatter)
stderr_handler.setFormatter(formatter)

logger = logging.getLogger("podcov")
logger.setLevel(LOGLEVEL)
logger.propagate = False
logger.addHandler(stdout_handler)
logger.addHandler(stderr_handler)

# websocket-client (used by the port-forward stream) logs every dropped connection as an error
websocket_logger = logging.getLogger("websocket")
websocket_logger.setLevel(logging.CRITICAL if LOGLEVEL != "DEBUG" else logging.DEBUG)
websocket_logger.propagate = False
websocket_logger.addHandler(stdout_handler)
websocket_logger.addHandler(stderr_handler)


def set_log_level(level: str):
    """Overrides LOGLEVEL, e.g. from a --log-level flag."""
    level = level.upper()
    logger.setLevel(level)
    websocket_logger.setLevel(logging.CRITICAL if level != "DEBUG" else logging.DEBUG)
