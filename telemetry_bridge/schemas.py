from pydantic import BaseModel, Field

from .mqtt_consumer import SessionState


class ConsumerStatsOut(BaseModel):
    received: int = 0
    stored: int = 0
    decode_failures: int = 0
    store_failures: int = 0
    reconnects: int = 0
    last_message_at: float | None = Field(default=None, description="Unix time of the last message received")


class Health(BaseModel):
    status: str = Field(description="ok while subscribed, degraded otherwise")
    mqtt_state: SessionState
    topic: str
    table: str
    schema_ready: bool
    stats: ConsumerStatsOut
