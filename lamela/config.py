"""Gateway configuration, read from the environment (and ``.env`` if present)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass
class GatewaySettings:
    """Runtime settings for the relay gateway."""

    host: str = "0.0.0.0"
    port: int = 8080
    session_timeout: float = 30.0  # seconds; also the sweep interval
    command_timeout: float = 30.0  # seconds
    data_dir: str = "./data"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> GatewaySettings:
        load_dotenv()
        defaults = cls()
        return cls(
            host=os.environ.get("LAMELA_HOST", defaults.host),
            port=_port("LAMELA_PORT", defaults.port),
            session_timeout=_seconds("LAMELA_SESSION_TIMEOUT", defaults.session_timeout),
            command_timeout=_seconds("LAMELA_COMMAND_TIMEOUT", defaults.command_timeout),
            data_dir=os.environ.get("LAMELA_DATA_DIR", defaults.data_dir),
            log_level=os.environ.get("LAMELA_LOG_LEVEL", defaults.log_level).upper(),
        )


def _seconds(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using %.1fs", name, raw, default)
        return default
    if value <= 0:
        logger.warning("%s must be positive, using %.1fs", name, default)
        return default
    return value


def _port(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using %d", name, raw, default)
        return default
    if not 0 < value < 65536:
        logger.warning("%s out of range (%d), using %d", name, value, default)
        return default
    return value
