"""Pydantic models for igdctl configuration.

Provides validated configuration models for the NAT traversal controller,
its UPnP collaborator and the logging stack.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class UPnPConfig(BaseModel):
    """UPnP IGD port forwarding configuration."""

    add_retry_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Number of AddPortMapping attempts before giving up on a port",
    )
    add_retry_delay: float = Field(
        default=5.0,
        ge=0.0,
        le=300.0,
        description="Fixed delay in seconds between AddPortMapping attempts",
    )
    lease_duration: int = Field(
        default=0,
        ge=0,
        le=604800,
        description="Mapping lease duration in seconds (0 for permanent, no renewal is scheduled)",
    )
    description_prefix: str = Field(
        default="igdctl ",
        max_length=64,
        description="Prefix prepended to each port name in NewPortMappingDescription",
    )
    internal_client: str | None = Field(
        default=None,
        description="LAN address to forward to (None to use the interface facing the gateway)",
    )
    ssdp_search_interval: float = Field(
        default=60.0,
        ge=1.0,
        le=3600.0,
        description="Interval in seconds between SSDP M-SEARCH requests",
    )
    ssdp_mx: int = Field(
        default=3,
        ge=1,
        le=5,
        description="MX header of M-SEARCH requests (maximum response delay)",
    )
    ssdp_bind_port: int = Field(
        default=1900,
        ge=0,
        le=65535,
        description="Local UDP port for SSDP (1900 also receives NOTIFY announcements)",
    )
    soap_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Timeout in seconds for a single SOAP action",
    )
    description_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Timeout in seconds for fetching a device description",
    )

    @field_validator("internal_client")
    @classmethod
    def validate_internal_client(cls, v: str | None) -> str | None:
        """Treat blank addresses as unset."""
        if v is not None and not v.strip():
            return None
        return v


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Use structured JSON logging on the console",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class Config(BaseModel):
    """Main configuration model."""

    nat: UPnPConfig = Field(
        default_factory=UPnPConfig,
        description="UPnP port forwarding configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Logging configuration",
    )
