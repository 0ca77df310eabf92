from marketchat.client.api import ApiError, ChatApiClient
from marketchat.client.connection import ConnectionState, GatewayConnection
from marketchat.client.controller import ConversationController, ErrorState

__all__ = [
    "ApiError",
    "ChatApiClient",
    "ConnectionState",
    "ConversationController",
    "ErrorState",
    "GatewayConnection",
]
