"""
dashboard/config.py

Runtime settings for the dashboard server.

Defaults mirror the deployed constants (allow-listed hosts, port 8080, the
public/ document root and the certs/ cache). Any field can be overridden from
the environment as DASHBOARD_<FIELD>, e.g.

    DASHBOARD_HOSTS=example.com,www.example.com
    DASHBOARD_PORT=8443
    DASHBOARD_HTTP_PORT=0        # disable the HTTP-01 responder
"""

import logging
import os
from typing import Mapping, Optional

from pydantic import BaseModel, field_validator

ENV_PREFIX = "DASHBOARD_"

LETSENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"


class Settings(BaseModel):
    hosts:             tuple[str, ...] = ("markmakave.com", "onnx.tech")
    bind:              str             = "0.0.0.0"
    port:              int             = 8080
    http_port:         int             = 80       # HTTP-01 responder; 0 disables
    static_dir:        str             = "public"
    cache_dir:         str             = "certs"
    acme_directory:    str             = LETSENCRYPT_DIRECTORY
    acme_email:        Optional[str]   = None
    renew_before_days: int             = 30
    stream_interval:   float           = 0.0      # seconds between points; 0 = no pacing
    prefetch:          bool            = False
    log_level:         str             = "INFO"

    @field_validator("hosts", mode="before")
    @classmethod
    def _split_hosts(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        hosts = tuple(h.strip().lower().rstrip(".") for h in value if h and h.strip())
        if not hosts:
            raise ValueError("at least one allowed host is required")
        return hosts

    @field_validator("port", "http_port")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 0 <= value <= 65535:
            raise ValueError(f"port {value} out of range")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        value = value.upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"unknown log level {value!r}")
        return value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from DASHBOARD_* variables; unset fields keep their defaults."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        return cls(**values)
