"""Listener configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Nested sections are populated from their own env-var prefixes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode


class ImapConfig(BaseSettings):
    """IMAP server connection settings."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use an implicit TLS connection")
    username: str = Field(description="IMAP login username")
    password: SecretStr | None = Field(default=None, description="IMAP login password")
    xoauth2_token: SecretStr | None = Field(
        default=None,
        description="OAuth2 access token; authenticates with XOAUTH2 instead of LOGIN",
    )
    tls_verify: bool = Field(default=True, description="Verify the server certificate")
    tls_ca_file: str | None = Field(
        default=None,
        description="Path to a CA bundle used to verify the server certificate",
    )
    connect_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for establishing the connection and receiving the greeting",
    )
    auth_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for the authentication exchange",
    )
    idle_renewal_seconds: float = Field(
        default=600.0,
        description="Seconds before an IDLE command is terminated and reissued",
    )
    noop_interval_seconds: float = Field(
        default=30.0,
        description="Polling interval when the server does not support IDLE",
    )
    fetch_chunk_size: int = Field(
        default=64 * 1024,
        ge=1,
        description="Maximum size of one body chunk delivered by a fetch",
    )

    @model_validator(mode="after")
    def _require_credentials(self) -> ImapConfig:
        if self.password is None and self.xoauth2_token is None:
            raise ValueError("either password or xoauth2_token must be set")
        return self


class AttachmentConfig(BaseSettings):
    """Where and how attachments are persisted."""

    model_config = {"env_prefix": "ATTACHMENTS_", "frozen": True}

    enabled: bool = Field(default=False, description="Persist attachments to disk")
    directory: Path = Field(
        default=Path("."),
        description="Directory attachments are written to",
    )
    stream: bool = Field(
        default=False,
        description="Let the parser write attachments while it walks the message",
    )


class ParserConfig(BaseSettings):
    """MIME parser options."""

    model_config = {"env_prefix": "PARSER_", "frozen": True}

    default_charset: str = Field(
        default="utf-8",
        description="Charset used when a text part declares none or an unknown one",
    )
    include_inline: bool = Field(
        default=True,
        description="Treat named inline parts (e.g. embedded images) as attachments",
    )
    stream_chunk_size: int = Field(
        default=64 * 1024,
        ge=1,
        description="Write size used when streaming attachments to disk",
    )


class ListenerConfig(BaseSettings):
    """Mailbox subscription settings; immutable once constructed."""

    model_config = {"env_prefix": "LISTENER_", "frozen": True}

    mailbox: str = Field(default="INBOX", description="Mailbox to watch")
    search_filter: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["UNSEEN"],
        description="Search criteria selecting the messages each pass processes",
    )
    mark_seen: bool = Field(
        default=False,
        description="Fetch with BODY[] so retrieved messages are flagged \\Seen",
    )
    mark_seen_on_search: bool = Field(
        default=True,
        description="Flag every search match \\Seen before fetching it",
    )
    fetch_unread_on_start: bool = Field(
        default=False,
        description="Run one pass as soon as the mailbox is selected",
    )
    max_concurrency: int | None = Field(
        default=None,
        ge=1,
        description="Upper bound on messages processed concurrently within a pass",
    )
    attachments: AttachmentConfig = Field(default_factory=AttachmentConfig)
    parser: ParserConfig = Field(default_factory=ParserConfig)

    @field_validator("search_filter", mode="before")
    @classmethod
    def _wrap_search_filter(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @property
    def streaming_attachments(self) -> bool:
        return self.attachments.enabled and self.attachments.stream


class RetryConfig(BaseSettings):
    """Reconnect backoff settings driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=5, description="Maximum connection attempts")
    initial_wait_seconds: float = Field(
        default=1.0,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=60.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class ServiceConfig(BaseSettings):
    """Root configuration for a long-running listener process."""

    model_config = {"env_prefix": "SERVICE_"}

    name: str = Field(default="mail-listener", description="Service name used in logs and probes")
    health_enabled: bool = Field(default=True, description="Serve /health and /ready")
    health_port: int = Field(default=8080, description="Port for health probe endpoints")
    log_json: bool = Field(default=True, description="Emit JSON log lines")
    log_level: str = Field(default="INFO", description="Root log level")
    reconnect: bool = Field(
        default=True,
        description="Reconnect after the server closes the connection",
    )
    drain_timeout_seconds: float = Field(
        default=30.0,
        description="How long shutdown waits for an in-flight pass",
    )

    imap: ImapConfig = Field(default_factory=ImapConfig)
    listener: ListenerConfig = Field(default_factory=ListenerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
