from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


def _required(name: str) -> str:
    value = os.environ.get(name, "")
    if not value:
        raise ValueError(f"{name} is required")
    return value


def _int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class Config:
    hmac_secret: str
    jwt_secret: str
    login_user: str
    login_pass: str
    host: str = "0.0.0.0"
    http_port: int = 8080
    tunnel_port: int = 8081
    log_file: str = "/tmp/wakerelay.log"
    log_level: str = "INFO"
    # Protocol timings (seconds)
    auth_timeout: float = 10.0
    probe_interval: float = 10.0
    probe_grace: float = 5.0
    command_timeout: float = 5.0
    max_clock_drift: int = 300
    jwt_expiration_hours: float = 2.0

    @classmethod
    def from_env(cls) -> Config:
        load_dotenv()
        return cls(
            hmac_secret=_required("WAKERELAY_HMAC_SECRET"),
            jwt_secret=_required("WAKERELAY_JWT_SECRET"),
            login_user=_required("WAKERELAY_LOGIN_USER"),
            login_pass=_required("WAKERELAY_LOGIN_PASS"),
            host=os.environ.get("WAKERELAY_HOST", "0.0.0.0"),
            http_port=_int("WAKERELAY_HTTP_PORT", 8080),
            tunnel_port=_int("WAKERELAY_TUNNEL_PORT", 8081),
            log_file=os.environ.get("WAKERELAY_LOG_FILE", "/tmp/wakerelay.log"),
            log_level=os.environ.get("WAKERELAY_LOG_LEVEL", "INFO").upper(),
        )
