from .errors import APIError, RateLimitExhausted, RetryCancelled, UpstreamError
from .logging import get_logger, request_id_var, setup_logging

__all__ = [
    "APIError",
    "RateLimitExhausted",
    "RetryCancelled",
    "UpstreamError",
    "get_logger",
    "request_id_var",
    "setup_logging",
]
