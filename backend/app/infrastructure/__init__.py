"""
Infrastructure layer - external system integrations.
Keeps business logic clean from implementation details.
"""

from .redis_client import get_redis, close_redis
from .mpesa_client import (
    MpesaClient, AccessTokenCache, GatewayError, GatewayUnavailable, GatewayRejected,
    get_mpesa_client, close_mpesa_client,
)

__all__ = [
    'get_redis', 'close_redis',
    'MpesaClient', 'AccessTokenCache', 'GatewayError', 'GatewayUnavailable', 'GatewayRejected',
    'get_mpesa_client', 'close_mpesa_client',
]
