from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.utils.sse_format import is_valid_event_name


class NotifyRequest(BaseModel):
    client_id: Optional[str] = Field(None, description="Target client. Required unless broadcast is true.")
    event: str = Field("notification", min_length=1, description="Event name sent on the stream.")
    payload: Any = Field(default_factory=dict, description="Arbitrary JSON payload, passed through as-is.")
    broadcast: bool = Field(False, description="Send to every connected client instead of one.")

    @field_validator("event")
    @classmethod
    def validate_event_name(cls, v):
        """Event names are written on a single `event:` line"""
        if not is_valid_event_name(v):
            raise ValueError("Event name must not contain line breaks")
        return v

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "client_id": "client_1700000000000_k3j9x0a1b",
                "event": "notification",
                "payload": {"message": "Hello!"},
                "broadcast": False,
            }
        }
    )


class NotifyResponse(BaseModel):
    ok: bool = True
    connections: int  # Total open connections after delivery
    broadcast: Optional[bool] = None  # Set for broadcasts
    delivered: Optional[int] = None  # Set for broadcasts
    sent: Optional[bool] = None  # Set for unicast sends
    client_id: Optional[str] = None


class ConnectionMetrics(BaseModel):
    total_connections: int
    total_clients: int
    average_connections_per_client: float


class ClientDetail(BaseModel):
    id: str
    name: Optional[str] = None
    connection_count: int
    connected_at: int  # Epoch milliseconds
    last_seen: int  # Epoch milliseconds


class ClientList(BaseModel):
    clients: List[ClientDetail]


class GeneratedClientId(BaseModel):
    client_id: str
