import os
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator


class ConfigError(Exception):
    """Raised when the server cannot start with the given settings."""


class ServerConfig(BaseModel):
    port: int = Field(ge=0, le=65535)
    document_root: str
    host: str = "0.0.0.0"
    # None means one thread per connection with no cap
    max_workers: int | None = Field(default=None, ge=1)
    backlog: int = Field(default=10, ge=1)
    # Confine resolved paths to the document root on top of the "/." check
    strict_paths: bool = True

    @field_validator("document_root")
    @classmethod
    def check_document_root(cls, value: str) -> str:
        if not value:
            raise ValueError("document root must not be empty")
        if value != "/" and value.startswith("."):
            raise ValueError(
                "document root must be relative to the server and cannot enter parent directories"
            )
        return value

    @classmethod
    def from_env(cls, port, document_root: str) -> "ServerConfig":
        """Build a config from the CLI arguments plus REIPACHE_* environment variables."""
        try:
            return cls(
                port=port,
                document_root=document_root,
                host=os.getenv("REIPACHE_HOST", "0.0.0.0"),
                max_workers=os.getenv("REIPACHE_MAX_WORKERS") or None,
                backlog=os.getenv("REIPACHE_BACKLOG", "10"),
                strict_paths=os.getenv("REIPACHE_STRICT_PATHS", "true"),
            )
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigError(f"Invalid configuration: {details}") from e


def enter_document_root(config: ServerConfig) -> Path:
    """Change into the document root and return it as an absolute path.

    "/" keeps the current working directory.
    """
    if config.document_root != "/":
        try:
            os.chdir(config.document_root)
        except OSError as e:
            raise ConfigError(
                f"Unable to open directory {config.document_root}: {e.strerror}"
            ) from e
    return Path.cwd()
