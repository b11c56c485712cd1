from .sse import ClientDetail, ClientList, ConnectionMetrics, GeneratedClientId, NotifyRequest, NotifyResponse

# Define the public API of this module
__all__ = [
    "ClientDetail",
    "ClientList",
    "ConnectionMetrics",
    "GeneratedClientId",
    "NotifyRequest",
    "NotifyResponse",
]
