import asyncio
import contextlib
import logging
import ssl
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

from .database import Database, StoreError
from .message_parser import decode_payload
from .models import DecodeFailure

logger = logging.getLogger(__name__)

_TLS_SCHEMES = {"ssl", "mqtts", "wss"}
_WEBSOCKET_SCHEMES = {"ws", "wss"}


class BrokerError(Exception):
    """Raised when the first connect or subscribe to the broker fails."""


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"


class ConsumerStats:
    def __init__(self):
        self.received = 0
        self.stored = 0
        self.decode_failures = 0
        self.store_failures = 0
        self.reconnects = 0
        self.last_message_at: float | None = None

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} stored={self.stored} "
            f"decode_failures={self.decode_failures} store_failures={self.store_failures} "
            f"reconnects={self.reconnects}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "stored": self.stored,
            "decode_failures": self.decode_failures,
            "store_failures": self.store_failures,
            "reconnects": self.reconnects,
            "last_message_at": self.last_message_at,
        }


def build_tls_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


class MQTTConsumer:
    """Owns the broker session and feeds every message through decode and insert.

    paho runs the network loop on its own thread. Its callbacks only post
    events onto an asyncio queue; a single task drains that queue, so session
    state changes and message handling all happen on the event loop, one
    event at a time.

    ``start()`` returns once the first connect and subscribe succeeded and
    raises ``BrokerError`` if either fails. Later connection loss moves the
    session to RECONNECTING; paho reconnects on its own and the topic is
    subscribed again from the connect callback.
    """

    def __init__(
        self,
        db: Database,
        *,
        broker_url: str,
        topic: str,
        client_id: str = "",
        username: str = "",
        password: str = "",
        qos: int = 0,
        keepalive: int = 60,
        connect_timeout: float = 10.0,
        reconnect_interval: float = 5.0,
    ):
        self._db = db
        self._broker_url = broker_url
        self._topic = topic
        self._client_id = client_id
        self._username = username
        self._password = password
        self._qos = qos
        self._keepalive = keepalive
        self._connect_timeout = connect_timeout
        self._reconnect_interval = reconnect_interval
        self._state = SessionState.DISCONNECTED
        self._stats = ConsumerStats()
        self._client: mqtt.Client | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._events: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None
        self._ready: asyncio.Future | None = None
        self._stopping = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def stats(self) -> ConsumerStats:
        return self._stats

    @property
    def topic(self) -> str:
        return self._topic

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug("MQTT session %s -> %s", self._state.value, state.value)
            self._state = state

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._ready = self._loop.create_future()
        self._stopping = False

        parts = urlsplit(self._broker_url)
        hostname = parts.hostname or "localhost"
        port = parts.port or (8883 if parts.scheme.lower() in _TLS_SCHEMES else 1883)
        logger.info("Starting MQTT consumer (broker=%s topic=%s qos=%s)", self._broker_url, self._topic, self._qos)

        self._client = self._build_client()
        self._task = asyncio.create_task(self._dispatch())
        try:
            await self._loop.run_in_executor(None, self._client.connect, hostname, port, self._keepalive)
        except (OSError, ValueError) as exc:
            await self._teardown()
            raise BrokerError(f"failed to connect to MQTT broker {self._broker_url}: {exc}") from exc

        self._client.loop_start()
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            await self._teardown()
            raise BrokerError(f"timed out subscribing to {self._topic} on {self._broker_url}") from None
        except BrokerError:
            await self._teardown()
            raise

    async def stop(self) -> None:
        await self._teardown()
        logger.info("Disconnected from MQTT broker (%s)", self._stats)

    async def _teardown(self) -> None:
        self._stopping = True
        client, self._client = self._client, None
        if client is not None:
            client.disconnect()
            await asyncio.get_running_loop().run_in_executor(None, client.loop_stop)

        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()
        self._set_state(SessionState.DISCONNECTED)

    def _build_client(self) -> mqtt.Client:
        parts = urlsplit(self._broker_url)
        scheme = parts.scheme.lower()
        transport = "websockets" if scheme in _WEBSOCKET_SCHEMES else "tcp"
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            transport=transport,
        )
        if transport == "websockets" and parts.path and parts.path != "/":
            client.ws_set_options(path=parts.path)
        if scheme in _TLS_SCHEMES:
            logger.info("Configuring TLS for secure connection to %s", self._broker_url)
            client.tls_set_context(build_tls_context())
        if self._username:
            client.username_pw_set(self._username, self._password)

        client.reconnect_delay_set(min_delay=1, max_delay=max(1, int(self._reconnect_interval)))
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        return client

    # -- paho callbacks (network thread) ---------------------------------

    def _post(self, kind: str, *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._events.put_nowait, (kind, args))

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        self._post("connected", reason_code)
        if reason_code.is_failure:
            return
        # Subscribing here covers the first session and every reconnect.
        result, _mid = client.subscribe(self._topic, qos=self._qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._post("subscribe_failed", mqtt.error_string(result))

    def _on_connect_fail(self, client, userdata) -> None:
        self._post("connect_failed")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        self._post("disconnected", reason_code)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties) -> None:
        failures = [str(code) for code in reason_code_list if code.is_failure]
        if failures:
            self._post("subscribe_failed", ", ".join(failures))
        else:
            self._post("subscribed")

    def _on_message(self, client, userdata, message) -> None:
        self._post("message", message.topic, message.payload)

    # -- event loop side -------------------------------------------------

    async def _dispatch(self) -> None:
        while True:
            kind, args = await self._events.get()
            try:
                if kind == "message":
                    await self._handle_message(*args)
                else:
                    self._on_session_event(kind, *args)
            except Exception:
                # This task is the queue's only consumer; it outlives any one event.
                logger.exception("Error handling MQTT %s event", kind)
            finally:
                self._events.task_done()

    def _fail_startup(self, message: str) -> bool:
        if self._ready is None or self._ready.done():
            return False
        self._ready.set_exception(BrokerError(message))
        return True

    def _on_session_event(self, kind: str, *args: Any) -> None:
        if kind == "connected":
            (reason_code,) = args
            if reason_code.is_failure:
                if not self._fail_startup(f"broker refused connection: {reason_code}"):
                    logger.warning("MQTT broker refused reconnection: %s", reason_code)
                return
            self._set_state(SessionState.CONNECTED)
            logger.info("Connected to MQTT broker: %s", self._broker_url)
        elif kind == "subscribed":
            self._set_state(SessionState.SUBSCRIBED)
            logger.info("Subscribed to topic: %s", self._topic)
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(None)
        elif kind == "subscribe_failed":
            (detail,) = args
            if not self._fail_startup(f"failed to subscribe to topic {self._topic}: {detail}"):
                logger.error("Failed to resubscribe to topic %s: %s", self._topic, detail)
        elif kind == "disconnected":
            (reason_code,) = args
            if self._stopping:
                return
            if self._fail_startup(f"connection lost while starting: {reason_code}"):
                return
            self._set_state(SessionState.RECONNECTING)
            self._stats.reconnects += 1
            logger.warning("Connection lost: %s", reason_code)
            logger.info("Attempting to reconnect to MQTT broker...")
        elif kind == "connect_failed":
            if not self._stopping:
                logger.info("Reconnect attempt to %s failed, retrying", self._broker_url)

    async def _handle_message(self, topic: str, payload: bytes) -> bool:
        self._stats.received += 1
        self._stats.last_message_at = time.time()
        logger.debug("MQTT message received topic=%r payload=%r", topic, payload)

        result = decode_payload(payload, received_at=datetime.now(timezone.utc))
        if isinstance(result, DecodeFailure):
            self._stats.decode_failures += 1
            logger.warning("Dropping message on topic %r (%s) payload=%r", topic, result, payload)
            return False

        try:
            await self._db.insert_record(result)
        except StoreError as exc:
            self._stats.store_failures += 1
            logger.error("Error inserting sensor data for device=%s: %s", result.device_id, exc)
            return False
        except Exception:
            self._stats.store_failures += 1
            logger.exception("Unexpected error storing sensor data for device=%s", result.device_id)
            return False

        self._stats.stored += 1
        logger.info(
            "Stored sensor data device=%s time=%s temp=%.2f humidity=%.2f light=%.2f",
            result.device_id,
            result.timestamp.isoformat(),
            result.temperature,
            result.humidity,
            result.light,
        )
        return True
