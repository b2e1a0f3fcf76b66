"""Request helpers shared by the routers: caller address, audit log, error payloads."""

from .client_ip import get_client_ip
from .responses import build_correlation_id, error_response, subscription_error_response
from .security_logger import security_logger

__all__ = [
    'build_correlation_id',
    'error_response',
    'get_client_ip',
    'security_logger',
    'subscription_error_response',
]
