import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any
from urllib.parse import quote

import yaml
from pydantic import Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "TELEMETRY_BRIDGE_CONFIG"
BROKER_URL_ENV = "MQTT_BROKER_URL"
# Environment spelling of the config file's database.dbname key.
DATABASE_NAME_ENV = "DATABASE_DBNAME"
DEFAULT_CONFIG_PATH = "config.yaml"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
_MQTT_SCHEMES = ("tcp://", "ssl://", "mqtt://", "mqtts://", "ws://", "wss://")

# Sections of config.yaml and the prefix their keys get once flattened.
_YAML_SECTIONS = {
    "mqtt": "mqtt_",
    "database": "database_",
    "timescale": "timescale_",
    "api": "api_",
}
# Keys whose flattened name differs from "<prefix><key>".
_YAML_RENAMES = {
    "database_dbname": "database_name",
}


def _flatten_yaml(document: dict[str, Any]) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in document.items():
        prefix = _YAML_SECTIONS.get(str(key).lower())
        if prefix is not None and isinstance(value, dict):
            for sub_key, sub_value in value.items():
                name = f"{prefix}{str(sub_key).lower()}"
                flat[_YAML_RENAMES.get(name, name)] = sub_value
        else:
            flat[str(key).lower()] = value
    return flat


class YamlFileSource(PydanticBaseSettingsSource):
    """Reads an optional config.yaml, accepting both nested and flat keys."""

    def __init__(self, settings_cls: type[BaseSettings], path: str | None = None):
        super().__init__(settings_cls)
        self._path = Path(path or os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))
        self._values = self._load()

    def _load(self) -> dict[str, Any]:
        if not self._path.is_file():
            logger.debug("No config file at %s, using environment and defaults", self._path)
            return {}
        with self._path.open("r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle) or {}
        if not isinstance(document, dict):
            raise ValueError(f"Config file {self._path} must contain a mapping")
        logger.info("Loaded configuration from %s", self._path)
        return _flatten_yaml(document)

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._values.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        known = set(self.settings_cls.model_fields)
        return {name: value for name, value in self._values.items() if name in known and value is not None}


class EnvAliasSource(PydanticBaseSettingsSource):
    """Reads fields from environment names other than their own.

    ``aliases`` maps a field name to the variable that sets it. Where this
    source sits in ``settings_customise_sources`` decides what it overrides.
    """

    def __init__(self, settings_cls: type[BaseSettings], aliases: dict[str, str]):
        super().__init__(settings_cls)
        self._aliases = aliases

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        env_name = self._aliases.get(field_name)
        if env_name is None:
            return None, field_name, False
        return os.environ.get(env_name) or None, field_name, False

    def __call__(self) -> dict[str, Any]:
        values = {}
        for field_name in self._aliases:
            value, _, _ = self.get_field_value(self.settings_cls.model_fields[field_name], field_name)
            if value:
                values[field_name] = value
        return values


class Settings(BaseSettings):
    mqtt_broker: str = "https://mqtt.ponytojas.dev"
    mqtt_port: int = 8883
    mqtt_client_id: str = "go-mqtt-client"
    mqtt_topic: str = "sensors/data"
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_qos: int = Field(default=0, ge=0, le=2)
    mqtt_keepalive: int = Field(default=60, gt=0)
    mqtt_connect_timeout: float = Field(default=10.0, gt=0)
    mqtt_reconnect_interval: float = Field(default=5.0, gt=0)

    database_url: str | None = None
    database_host: str = "localhost"
    database_port: int = 5432
    database_user: str = "postgres"
    database_password: str = "postgres"
    database_name: str = "iot_data"
    database_sslmode: str = "disable"

    timescale_table_name: str = "sensor_data"

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            EnvAliasSource(settings_cls, {"mqtt_broker": BROKER_URL_ENV}),
            env_settings,
            EnvAliasSource(settings_cls, {"database_name": DATABASE_NAME_ENV}),
            dotenv_settings,
            YamlFileSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("timescale_table_name")
    @classmethod
    def _check_table_name(cls, value: str) -> str:
        if not _IDENTIFIER.match(value):
            raise ValueError(f"table name {value!r} is not a plain SQL identifier")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @property
    def broker_url(self) -> str:
        broker = self.mqtt_broker.strip()
        for scheme in _MQTT_SCHEMES:
            if broker.startswith(scheme):
                return scheme + self._with_port(broker[len(scheme):])

        if broker.startswith("http://"):
            return "tcp://" + self._with_port(broker[len("http://"):])
        if broker.startswith("https://"):
            return "ssl://" + self._with_port(broker[len("https://"):])

        logger.info("No protocol specified in broker URL %r, defaulting to tcp://", broker)
        return "tcp://" + self._with_port(broker)

    def _with_port(self, location: str) -> str:
        host, sep, path = location.partition("/")
        if ":" not in host:
            host = f"{host}:{self.mqtt_port}"
        path = path.rstrip("/")
        return f"{host}/{path}" if sep and path else host

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url
        user = quote(self.database_user, safe="")
        password = quote(self.database_password, safe="")
        return (
            f"postgresql://{user}:{password}@{self.database_host}:{self.database_port}"
            f"/{self.database_name}?sslmode={self.database_sslmode}"
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
