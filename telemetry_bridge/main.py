import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request

from .config import Settings, get_settings
from .database import Database
from .mqtt_consumer import MQTTConsumer, SessionState
from .schemas import ConsumerStatsOut, Health

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


def build_database(settings: Settings) -> Database:
    return Database(settings.database_dsn, table_name=settings.timescale_table_name)


def build_consumer(settings: Settings, db: Database) -> MQTTConsumer:
    return MQTTConsumer(
        db,
        broker_url=settings.broker_url,
        topic=settings.mqtt_topic,
        client_id=settings.mqtt_client_id,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        qos=settings.mqtt_qos,
        keepalive=settings.mqtt_keepalive,
        connect_timeout=settings.mqtt_connect_timeout,
        reconnect_interval=settings.mqtt_reconnect_interval,
    )


def create_app(
    settings: Settings | None = None,
    *,
    db: Database | None = None,
    consumer: MQTTConsumer | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    db = db or build_database(settings)
    consumer = consumer or build_consumer(settings, db)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting MQTT to TimescaleDB service...")
        try:
            logger.info("Connecting to TimescaleDB...")
            await db.connect()
            logger.info("Initializing database table...")
            await db.initialize_schema()
            await consumer.start()
        except Exception:
            logger.exception("Startup failed, releasing resources")
            await db.disconnect()
            raise
        logger.info("Service is running. Subscribed to topic: %s", consumer.topic)
        try:
            yield
        finally:
            logger.info("Shutting down...")
            await consumer.stop()
            await db.disconnect()

    app = FastAPI(title="Telemetry Bridge", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.consumer = consumer

    @app.get("/health", response_model=Health, tags=["system"])
    async def health(request: Request) -> Health:
        state = request.app.state
        subscribed = state.consumer.state is SessionState.SUBSCRIBED
        return Health(
            status="ok" if subscribed else "degraded",
            mqtt_state=state.consumer.state,
            topic=state.consumer.topic,
            table=state.db.table_name,
            schema_ready=state.db.schema_ready,
            stats=ConsumerStatsOut(**state.consumer.stats.to_dict()),
        )

    return app


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
