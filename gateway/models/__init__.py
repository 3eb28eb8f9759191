"""ORM model exports."""

from gateway.models.cli_session import CliSession
from gateway.models.connection import CONNECTION_STATUS_ACTIVE, Connection
from gateway.models.device_session import DeviceSession
from gateway.models.oauth_state import OAuthState

__all__ = [
    "CONNECTION_STATUS_ACTIVE",
    "CliSession",
    "Connection",
    "DeviceSession",
    "OAuthState",
]
