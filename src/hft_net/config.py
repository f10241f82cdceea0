"""
Configuration for the rendezvous service and the discovery client.

Loads settings from environment variables or a YAML file.
Validates all settings and provides typed access.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ._types import DEFAULT_GAME_PORT

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

# /16 prefixes consumer routers hand out addresses from
COMMON_SUBNET_BASES = ["192.168", "10.0"]

# Third octets used by router vendors' factory defaults
COMMON_THIRD_OCTETS = [
    0,    # D-Link, Linksys, Netgear, Senao, Trendtech, Speedtouch, Zyxel
    1,    # 3com, Asus, Dell, D-Link, Linksys, MSI, US Robotics, Apple, Belkin
    2,    # Belkin, Microsoft, Trendtech, US Robotics, Zyxel
    4,    # Zyxel
    8,    # Zyxel
    10,   # Motorola, Trendtech, Zyxel
    11,   # Buffalo
    20,   # Motorola
    30,   # Motorola
    50,   # Motorola
    62,   # Motorola
    100,  # Motorola
    101,  # Motorola
    123,  # US Robotics
    254,  # Flowpoint
]

# The router itself plus the first DHCP leases
COMMON_HOST_OCTETS = [1, 2, 3, 4, 5, 100, 101, 254]


def _validate_log_level(v: str) -> str:
    v = v.upper()
    if v not in LOG_LEVELS:
        raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
    return v


class RendezvousConfig(BaseModel):
    """Rendezvous service configuration."""

    # ========================================================================
    # HTTP
    # ========================================================================

    host: str = Field(default="127.0.0.1", description="Address to bind")
    port: int = Field(default=1337, ge=1, le=65535, description="Port to bind")
    forwarded_header: str = Field(
        default="X-Forwarded-For",
        description="Header carrying the caller's public address(es)",
    )

    # ========================================================================
    # Game cache
    # ========================================================================

    max_age_seconds: float = Field(
        default=60 * 60 * 2,
        gt=0,
        description="Forget a game this long after its last report",
    )
    sweep_interval_seconds: float = Field(
        default=60,
        gt=0,
        description="Seconds between expiry sweeps",
    )

    # ========================================================================
    # Logging
    # ========================================================================

    monitor_interval_seconds: float = Field(
        default=60 * 30,
        gt=0,
        description="Seconds between cache state log lines",
    )
    log_level: str = Field(default="INFO", description="Service log level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        return _validate_log_level(v)

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid",
    )

    @classmethod
    def from_yaml(cls, path: Path) -> "RendezvousConfig":
        """Load configuration from YAML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        values: dict = {}
        if "http" in data:
            h = data["http"]
            for key in ("host", "port", "forwarded_header"):
                if key in h:
                    values[key] = h[key]

        if "cache" in data:
            c = data["cache"]
            if "max_age" in c:
                values["max_age_seconds"] = c["max_age"]
            if "sweep_interval" in c:
                values["sweep_interval_seconds"] = c["sweep_interval"]

        if "monitor_interval" in data:
            values["monitor_interval_seconds"] = data["monitor_interval"]
        if "log_level" in data:
            values["log_level"] = data["log_level"]

        return cls(**values)


class ScannerConfig(BaseModel):
    """Discovery scanner configuration."""

    port: int = Field(
        default=DEFAULT_GAME_PORT,
        ge=1,
        le=65535,
        description="Port game servers answer probes on",
    )
    max_concurrent_probes: int = Field(
        default=4,
        ge=1,
        description="Probes allowed in flight at once",
    )
    probe_timeout: float = Field(
        default=0.2,
        gt=0,
        description="Seconds to wait for a scan probe",
    )
    targeted_probe_timeout: float = Field(
        default=2.0,
        gt=0,
        description="Seconds to wait for a probe of a rendezvous candidate",
    )
    live_host_threshold: float = Field(
        default=0.15,
        gt=0,
        description="A fast-scan answer quicker than this means the /24 is live",
    )
    start_host: int = Field(default=1, ge=1, le=254, description="First host octet of a full scan")
    end_host: int = Field(default=254, ge=1, le=254, description="Last host octet of a full scan")

    common_subnet_bases: list[str] = Field(default_factory=lambda: list(COMMON_SUBNET_BASES))
    common_third_octets: list[int] = Field(default_factory=lambda: list(COMMON_THIRD_OCTETS))
    common_host_octets: list[int] = Field(default_factory=lambda: list(COMMON_HOST_OCTETS))

    @field_validator("common_subnet_bases")
    @classmethod
    def validate_subnet_bases(cls, v):
        for base in v:
            parts = base.split(".")
            if len(parts) != 2 or not all(p.isdigit() and int(p) <= 255 for p in parts):
                raise ValueError(f"subnet base must look like 192.168: {base}")
        return v

    @field_validator("common_third_octets", "common_host_octets")
    @classmethod
    def validate_octets(cls, v):
        for octet in v:
            if octet < 0 or octet > 255:
                raise ValueError(f"octet out of range: {octet}")
        return v

    @model_validator(mode="after")
    def validate_host_range(self):
        if self.start_host > self.end_host:
            raise ValueError("start_host must not be greater than end_host")
        return self

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid",
    )


class FinderConfig(BaseModel):
    """Client-side discovery configuration."""

    rendezvous_url: str = Field(
        default="http://happyfuntimes.net/api/getgames2",
        description="Where to ask which games share our public address",
    )
    rendezvous_timeout: float = Field(default=5.0, gt=0)
    scan_on_failure: bool = Field(
        default=True,
        description="Scan the local network when rendezvous finds nothing",
    )
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        return _validate_log_level(v)

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid",
    )


def load_config() -> RendezvousConfig:
    """
    Load rendezvous service configuration from environment variables.

    Returns:
        RendezvousConfig: Validated configuration

    Raises:
        pydantic.ValidationError: If a setting is invalid
    """
    config_dict = {
        "host": os.environ.get("HFT_HOST", "127.0.0.1"),
        "port": int(os.environ.get("HFT_PORT", "1337")),
        "forwarded_header": os.environ.get("HFT_FORWARDED_HEADER", "X-Forwarded-For"),
        "max_age_seconds": float(os.environ.get("HFT_MAX_AGE", str(60 * 60 * 2))),
        "sweep_interval_seconds": float(os.environ.get("HFT_SWEEP_INTERVAL", "60")),
        "monitor_interval_seconds": float(os.environ.get("HFT_MONITOR_INTERVAL", str(60 * 30))),
        "log_level": os.environ.get("LOG_LEVEL", "INFO"),
    }

    return RendezvousConfig(**config_dict)


def load_finder_config(url: Optional[str] = None) -> FinderConfig:
    """Load discovery client configuration from environment variables."""
    scanner = ScannerConfig(
        port=int(os.environ.get("HFT_GAME_PORT", str(DEFAULT_GAME_PORT))),
        max_concurrent_probes=int(os.environ.get("HFT_MAX_CONCURRENT_PROBES", "4")),
        probe_timeout=float(os.environ.get("HFT_PROBE_TIMEOUT", "0.2")),
    )
    config = FinderConfig(
        scanner=scanner,
        scan_on_failure=os.environ.get("HFT_SCAN", "true").lower() == "true",
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
    )
    if url := (url or os.environ.get("HFT_RENDEZVOUS_URL")):
        config.rendezvous_url = url
    return config
