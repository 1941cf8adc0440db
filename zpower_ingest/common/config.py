from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv


def _default_env_file() -> str:
    return str(Path.cwd() / ".env")


def _split_devices(raw: str) -> Tuple[str, ...]:
    return tuple(d.strip() for d in raw.split(",") if d.strip())


@dataclass(frozen=True)
class Settings:
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_qos: int = 1
    base_topic: str = "zigbee2mqtt"
    devices: Tuple[str, ...] = field(default_factory=tuple)

    db_path: str = "./zpowergraph.db"

    payload_format: str = "zigbee2mqtt"
    clock_skew_seconds: float = 60.0
    idle_timeout_seconds: float = 30.0

    queue_max_size: int = 1000
    workers: int = 1
    store_retry_attempts: int = 3
    store_retry_base_delay: float = 0.2
    drain_timeout_seconds: float = 10.0

    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 60.0

    metrics_port: Optional[int] = None
    log_level: str = "INFO"

    def with_overrides(self, **overrides) -> "Settings":
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @property
    def topics(self) -> Tuple[str, ...]:
        base = self.base_topic.rstrip("/")
        if not self.devices:
            return (f"{base}/+",)
        return tuple(f"{base}/{device}" for device in self.devices)


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("ZPOWER_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    metrics_port = os.getenv("ZPOWER_METRICS_PORT", "").strip()

    return Settings(
        mqtt_host=os.getenv("MQTT_BROKER_HOST", "localhost"),
        mqtt_port=int(os.getenv("MQTT_BROKER_PORT", "1883")),
        mqtt_username=os.getenv("MQTT_USERNAME") or None,
        mqtt_password=os.getenv("MQTT_PASSWORD") or None,
        mqtt_qos=int(os.getenv("MQTT_QOS", "1")),
        base_topic=os.getenv("MQTT_BASE_TOPIC", "zigbee2mqtt"),
        devices=_split_devices(os.getenv("MQTT_DEVICES", "")),
        db_path=os.getenv("ZPOWER_DB_PATH", "./zpowergraph.db"),
        payload_format=os.getenv("ZPOWER_PAYLOAD_FORMAT", "zigbee2mqtt"),
        clock_skew_seconds=float(os.getenv("ZPOWER_CLOCK_SKEW_SECONDS", "60")),
        idle_timeout_seconds=float(os.getenv("ZPOWER_IDLE_TIMEOUT_SECONDS", "30")),
        queue_max_size=int(os.getenv("ZPOWER_QUEUE_MAX_SIZE", "1000")),
        workers=int(os.getenv("ZPOWER_WORKERS", "1")),
        store_retry_attempts=int(os.getenv("ZPOWER_STORE_RETRY_ATTEMPTS", "3")),
        store_retry_base_delay=float(os.getenv("ZPOWER_STORE_RETRY_BASE_DELAY", "0.2")),
        drain_timeout_seconds=float(os.getenv("ZPOWER_DRAIN_TIMEOUT", "10")),
        reconnect_base_delay=float(os.getenv("ZPOWER_RECONNECT_BASE_DELAY", "1")),
        reconnect_max_delay=float(os.getenv("ZPOWER_RECONNECT_MAX_DELAY", "60")),
        metrics_port=int(metrics_port) if metrics_port else None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
