"""
Application settings for the law-firm case chat service.

Configuration is split into nested Pydantic models, one per concern, and
loaded by a single BaseSettings root from environment variables and an
optional .env file. Nested values use a double underscore delimiter:

    AUTH__JWT_SECRET=change-me
    DATABASE__MONGODB_URI=mongodb://mongo:27017
    CHAT__FLUSH_INTERVAL_SECONDS=2.5
    LOGGING__LEVEL=DEBUG
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthSettings(BaseModel):
    """Token verification settings shared with the HTTP login flow."""
    jwt_secret: str = Field(
        default="",
        description="Shared secret used to sign login tokens"
    )
    jwt_algorithm: str = Field(
        default="HS256",
        description="JWT signing algorithm"
    )
    jwt_issuer: Optional[str] = Field(
        default=None,
        description="Expected token issuer, checked only when set"
    )
    token_query_param: str = Field(
        default="token",
        description="Query parameter carrying the bearer token on socket connect"
    )


class DatabaseSettings(BaseModel):
    """MongoDB configuration settings."""
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection URI"
    )
    mongodb_database: str = Field(
        default="lawfirm",
        description="MongoDB database name"
    )
    cases_collection: str = Field(
        default="cases",
        description="Collection holding case documents"
    )
    users_collection: str = Field(
        default="users",
        description="Collection holding user documents"
    )
    messages_collection: str = Field(
        default="messages",
        description="Collection holding per-case message lists"
    )
    server_selection_timeout_ms: int = Field(
        default=5000,
        description="Server selection timeout in milliseconds"
    )
    max_pool_size: int = Field(
        default=50,
        description="Maximum connection pool size"
    )


class ChatSettings(BaseModel):
    """Real-time chat and batch persistence settings."""
    flush_interval_seconds: float = Field(
        default=5.0,
        description="Interval between batch flushes to the message store"
    )
    max_flush_retries: int = Field(
        default=3,
        description="Flush retries after the first failed attempt before a batch is dead-lettered"
    )
    dead_letter_capacity: int = Field(
        default=100,
        description="Dead-lettered batches kept in memory for inspection"
    )
    max_message_length: int = Field(
        default=5000,
        description="Maximum chat message body length in characters"
    )
    max_connections_per_user: int = Field(
        default=10,
        description="Maximum concurrent socket connections per user"
    )


class LoggingSettings(BaseModel):
    """Logging configuration settings."""
    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    use_json: bool = Field(
        default=False,
        description="Render structured JSON instead of rich console output"
    )
    enable_correlation_ids: bool = Field(
        default=True,
        description="Enable correlation ID tracking"
    )

    def get_log_level_numeric(self) -> int:
        """Get numeric log level for Python logging."""
        import logging
        return getattr(logging, self.level.upper(), logging.INFO)


class Settings(BaseSettings):
    """
    Application configuration settings.

    Values are read from environment variables, the .env file and the
    defaults declared on each section, in that order of precedence.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(
        default="Law Firm Case Chat",
        description="Application name"
    )

    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )

    debug: bool = Field(
        default=False,
        description="Debug mode enabled"
    )

    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        description="Origins allowed to call the HTTP API"
    )

    auth: AuthSettings = Field(
        default_factory=AuthSettings,
        description="Token verification configuration"
    )

    database: DatabaseSettings = Field(
        default_factory=DatabaseSettings,
        description="Database configuration"
    )

    chat: ChatSettings = Field(
        default_factory=ChatSettings,
        description="Chat and batch persistence configuration"
    )

    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration"
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary, with the token secret masked."""
        data = self.model_dump()
        if data["auth"]["jwt_secret"]:
            data["auth"]["jwt_secret"] = "***"
        return data

    def validate_configuration(self) -> Dict[str, list[str]]:
        """
        Validate the entire configuration.

        Returns:
            Dictionary with validation errors by section
        """
        errors: Dict[str, list[str]] = {}

        if not self.auth.jwt_secret:
            errors.setdefault("auth", []).append("jwt_secret must be set")

        if not self._is_valid_url(self.database.mongodb_uri):
            errors.setdefault("database", []).append(
                f"Invalid URL: database.mongodb_uri = {self.database.mongodb_uri}"
            )

        if self.chat.flush_interval_seconds <= 0:
            errors.setdefault("chat", []).append(
                f"Must be positive: chat.flush_interval_seconds = {self.chat.flush_interval_seconds}"
            )

        positive_int_fields = [
            ("chat.max_message_length", self.chat.max_message_length),
            ("chat.dead_letter_capacity", self.chat.dead_letter_capacity),
            ("chat.max_connections_per_user", self.chat.max_connections_per_user),
        ]
        for field_path, value in positive_int_fields:
            if not isinstance(value, int) or value <= 0:
                errors.setdefault(field_path.split('.')[0], []).append(
                    f"Must be positive integer: {field_path} = {value}"
                )

        if self.chat.max_flush_retries < 0:
            errors.setdefault("chat", []).append(
                f"Must not be negative: chat.max_flush_retries = {self.chat.max_flush_retries}"
            )

        return errors

    def _is_valid_url(self, url: str) -> bool:
        """Check if URL is valid."""
        from urllib.parse import urlparse
        result = urlparse(url)
        return all([result.scheme, result.netloc])


@lru_cache()
def get_settings() -> Settings:
    """Get application settings singleton."""
    return Settings()
