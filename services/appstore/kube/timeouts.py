"""Bound on every Kubernetes API call made by the controllers.

The kubernetes client has no client-wide timeout, so each call passes
request_timeout() as `_request_timeout`. configure_request_timeout() is
called once at manager startup.
"""

from appstore.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_REQUEST_TIMEOUT = 10.0

_request_timeout: float = DEFAULT_REQUEST_TIMEOUT


def configure_request_timeout(seconds: float) -> None:
    global _request_timeout  # noqa: PLW0603
    if seconds <= 0:
        raise ValueError(f"request timeout must be positive, got {seconds}")
    _request_timeout = seconds
    logger.info("Kubernetes request timeout configured", seconds=seconds)


def request_timeout() -> float:
    return _request_timeout
