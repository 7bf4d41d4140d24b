"""Runtime configuration.

Defaults suit a Colmi R02 on a desktop adapter. The MCP server reads
overrides from ``COLMI_RING_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping

from .transport.base import DeviceFilter

logger = logging.getLogger(__name__)

ENV_PREFIX = "COLMI_RING_"


@dataclass
class ConnectionConfig:
    """Timing and limits for the connection state machine (seconds)."""

    scan_timeout: float = 15.0
    connect_timeout: float = 20.0
    max_reconnect_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    silence_timeout: float = 10.0
    notification_queue_size: int = 256
    adapter: str | None = None
    write_with_response: bool = False

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based), doubling up to the cap."""
        if attempt < 1:
            raise ValueError(f"Attempt numbers start at 1, got {attempt}")
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)


@dataclass
class SessionConfig:
    command_timeout: float = 3.0
    max_retries: int = 2
    retry_delay: float = 0.5
    burst_samples: int = 8


@dataclass
class RingConfig:
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    device_filter: DeviceFilter = field(default_factory=DeviceFilter)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RingConfig:
        """Build a config from ``COLMI_RING_*`` variables.

        Recognised: ``ADDRESS``, ``NAME``, ``ADAPTER``, ``COMMAND_TIMEOUT``,
        ``MAX_RECONNECTS``, ``SILENCE_TIMEOUT``, ``LOG_LEVEL``.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value and value.strip() else None

        config = cls()

        address, name = get("ADDRESS"), get("NAME")
        if address or name:
            config.device_filter = DeviceFilter(
                address=address,
                names=(name,) if name else (),
                name_prefixes=(name,) if name else (),
                service_uuid=None,
            )

        config.connection.adapter = get("ADAPTER")
        config.session.command_timeout = _number(get("COMMAND_TIMEOUT"), config.session.command_timeout)
        config.connection.max_reconnect_attempts = int(
            _number(get("MAX_RECONNECTS"), config.connection.max_reconnect_attempts)
        )
        config.connection.silence_timeout = _number(
            get("SILENCE_TIMEOUT"), config.connection.silence_timeout
        )

        level = get("LOG_LEVEL")
        if level:
            config.log_level = level.upper()
        return config


def _number(raw: str | None, default: float) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric setting %r", raw)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive setting %r", raw)
        return default
    return value
