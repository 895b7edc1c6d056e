"""Configuration management for Upload Tokens."""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class StorageConfig:
    """Database and token lifecycle configuration."""

    database_path: str = "./data/upload_tokens.db"
    pool_size: int = 5
    busy_timeout: float = 5.0
    token_ttl_minutes: int = 15
    cleanup_probability: float = 0.1
    cleanup_interval: float = 0.0


@dataclass
class ServerConfig:
    """HTTP endpoint configuration."""

    host: str = "localhost"
    port: int = 8080


@dataclass
class Config:
    """Application configuration from environment variables."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables with validation."""
        errors = []

        def read(env_var: str, default, cast):
            raw = os.getenv(env_var)
            if raw is None or raw.strip() == "":
                return default
            try:
                return cast(raw.strip())
            except ValueError:
                errors.append(f"{env_var} must be a valid {cast.__name__}, got {raw!r}")
                return default

        storage = StorageConfig(
            database_path=read("DATABASE_PATH", StorageConfig.database_path, str),
            pool_size=read("DB_POOL_SIZE", StorageConfig.pool_size, int),
            busy_timeout=read("DB_BUSY_TIMEOUT", StorageConfig.busy_timeout, float),
            token_ttl_minutes=read("TOKEN_TTL_MINUTES", StorageConfig.token_ttl_minutes, int),
            cleanup_probability=read(
                "TOKEN_CLEANUP_PROBABILITY", StorageConfig.cleanup_probability, float
            ),
            cleanup_interval=read("TOKEN_CLEANUP_INTERVAL", StorageConfig.cleanup_interval, float),
        )
        server = ServerConfig(
            host=read("HOST", ServerConfig.host, str),
            port=read("PORT", ServerConfig.port, int),
        )
        log_level = read("LOG_LEVEL", "INFO", str).upper()

        if storage.pool_size < 1:
            errors.append("DB_POOL_SIZE must be at least 1")
        if storage.busy_timeout < 0:
            errors.append("DB_BUSY_TIMEOUT must not be negative")
        if storage.token_ttl_minutes <= 0:
            errors.append("TOKEN_TTL_MINUTES must be positive")
        if not 0.0 <= storage.cleanup_probability <= 1.0:
            errors.append("TOKEN_CLEANUP_PROBABILITY must be between 0 and 1")
        if storage.cleanup_interval < 0:
            errors.append("TOKEN_CLEANUP_INTERVAL must not be negative")
        if not 0 < server.port < 65536:
            errors.append("PORT must be between 1 and 65535")
        if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"LOG_LEVEL {log_level!r} is not a known logging level")

        if errors:
            raise ValueError(
                f"Invalid configuration: {'; '.join(errors)}\n"
                f"Please check your .env file or environment configuration."
            )

        return cls(storage=storage, server=server, log_level=log_level)


# Global config instance (lazy loaded)
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config
