# api/__init__.py
from api.auth import (
    Principal,
    create_access_token,
    decode_token,
)
from api.container import (
    ServerConfig,
    ServiceContainer,
)

__all__ = [
    "Principal",
    "create_access_token",
    "decode_token",
    "ServerConfig",
    "ServiceContainer",
]
