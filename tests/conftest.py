from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import paho.mqtt.client as mqtt
import pytest
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from telemetry_bridge import database, mqtt_consumer
from telemetry_bridge.database import Database

CONNACK_OK = ReasonCode(PacketTypes.CONNACK, identifier=0)
CONNACK_NOT_AUTHORIZED = ReasonCode(PacketTypes.CONNACK, identifier=135)
SUBACK_OK = ReasonCode(PacketTypes.SUBACK, identifier=0)
SUBACK_FAILED = ReasonCode(PacketTypes.SUBACK, identifier=128)
CONNECTION_LOST = ReasonCode(PacketTypes.DISCONNECT, identifier=128)


# =============================================================================
# asyncpg
# =============================================================================

class FakeConnection:
    """Stands in for an asyncpg connection with a single table in its catalog."""

    def __init__(self, *, table_exists: bool = False, insert_status: str = "INSERT 0 1"):
        self.table_exists = table_exists
        self.insert_status = insert_status
        self.statements: list[tuple[str, tuple[Any, ...]]] = []
        self.fail_with: BaseException | None = None
        self.transactions = 0

    async def fetchval(self, query: str, *args: Any) -> Any:
        if self.fail_with is not None:
            raise self.fail_with
        self.statements.append((query, args))
        return self.table_exists

    async def execute(self, query: str, *args: Any) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.statements.append((query, args))
        normalized = " ".join(query.split())
        if normalized.startswith("CREATE TABLE"):
            self.table_exists = True
            return "CREATE TABLE"
        if normalized.startswith("INSERT"):
            return self.insert_status
        return "SELECT 1"

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield

    def executed(self, prefix: str) -> list[tuple[str, tuple[Any, ...]]]:
        return [(q, a) for q, a in self.statements if " ".join(q.split()).startswith(prefix)]


class FakePool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield self.conn

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_pool(fake_conn: FakeConnection, monkeypatch) -> FakePool:
    pool = FakePool(fake_conn)
    monkeypatch.setattr(database.asyncpg, "create_pool", AsyncMock(return_value=pool))
    return pool


@pytest.fixture
async def ready_db(fake_pool: FakePool) -> Database:
    db = Database("postgresql://test@localhost/test", table_name="sensor_data")
    await db.connect()
    await db.initialize_schema()
    yield db
    await db.disconnect()


# =============================================================================
# paho-mqtt
# =============================================================================

class FakeMQTTClient:
    """Mimics the parts of paho's Client the consumer uses.

    ``loop_start`` immediately plays the CONNACK, which makes the consumer
    subscribe, which in turn plays the SUBACK.
    """

    connect_error: BaseException | None = None
    connack: ReasonCode = CONNACK_OK
    suback: list = [SUBACK_OK]
    instances: list["FakeMQTTClient"] = []

    def __init__(self, callback_api_version=None, client_id: str = "", transport: str = "tcp", **kwargs):
        self.callback_api_version = callback_api_version
        self.client_id = client_id
        self.transport = transport
        self.address: tuple[str, int, int] | None = None
        self.credentials: tuple[str, str | None] | None = None
        self.tls_context = None
        self.ws_path: str | None = None
        self.reconnect_delay: tuple[float, float] | None = None
        self.subscriptions: list[tuple[str, int]] = []
        self.loop_running = False
        self.disconnected = False
        type(self).instances.append(self)

    def ws_set_options(self, path: str = "/mqtt", headers=None) -> None:
        self.ws_path = path

    def tls_set_context(self, context=None) -> None:
        self.tls_context = context

    def username_pw_set(self, username: str, password: str | None = None) -> None:
        self.credentials = (username, password)

    def reconnect_delay_set(self, min_delay: float = 1, max_delay: float = 120) -> None:
        self.reconnect_delay = (min_delay, max_delay)

    def connect(self, host: str, port: int = 1883, keepalive: int = 60):
        self.address = (host, port, keepalive)
        if self.connect_error is not None:
            raise self.connect_error
        return mqtt.MQTT_ERR_SUCCESS

    def loop_start(self):
        self.loop_running = True
        self.on_connect(self, None, {}, self.connack, None)
        return mqtt.MQTT_ERR_SUCCESS

    def loop_stop(self):
        self.loop_running = False
        return mqtt.MQTT_ERR_SUCCESS

    def subscribe(self, topic: str, qos: int = 0):
        self.subscriptions.append((topic, qos))
        self.on_subscribe(self, None, len(self.subscriptions), list(self.suback), None)
        return mqtt.MQTT_ERR_SUCCESS, len(self.subscriptions)

    def disconnect(self):
        self.disconnected = True
        return mqtt.MQTT_ERR_SUCCESS

    # -- helpers driving the consumer as the network thread would ----------

    def deliver(self, payload: bytes, topic: str = "sensors/data") -> None:
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))

    def lose_connection(self) -> None:
        self.on_disconnect(self, None, None, CONNECTION_LOST, None)

    def reconnect(self) -> None:
        self.on_connect(self, None, {}, CONNACK_OK, None)


@pytest.fixture
def fake_mqtt(monkeypatch) -> type[FakeMQTTClient]:
    client_cls = type("Client", (FakeMQTTClient,), {"instances": []})
    monkeypatch.setattr(mqtt_consumer.mqtt, "Client", client_cls)
    return client_cls


async def settle(consumer: mqtt_consumer.MQTTConsumer) -> None:
    """Let posted paho events reach the queue and be fully handled."""
    for _ in range(3):
        await asyncio.sleep(0)
    await consumer._events.join()
