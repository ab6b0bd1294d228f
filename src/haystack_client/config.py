"""Configuration management for the Haystack client"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .batch.options import PROFILES, BatchOptions


class ClientOptions(BaseModel):
    """Behaviour options of a client instance"""

    model_config = ConfigDict(extra="forbid")

    impersonate_as: str | None = Field(
        None, description="User ID sent as X-IMPERSONATE on every request"
    )
    accept_gzip: bool = Field(
        True, strict=True, description="Request gzip/deflate responses"
    )
    progress_enabled: bool = Field(
        False, strict=True, description="Show a progress bar for batches"
    )
    batch: dict[str, BatchOptions] = Field(
        default_factory=dict,
        description="Default options per batch operation (e.g. 'his_write')",
    )
    perform_op_in_batch: BatchOptions | None = Field(
        None, description="Default options for perform_op_in_batch"
    )

    def batch_defaults(self, operation: str) -> BatchOptions | None:
        """Get the configured defaults for a batch operation

        Raises:
            KeyError: If the operation has no batch profile
        """
        if operation not in PROFILES:
            raise KeyError(f"Unknown batch operation {operation}")
        if operation == "perform_op_in_batch":
            return self.perform_op_in_batch
        return self.batch.get(operation)


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ClientConfig:
    """Connection settings for a client, loaded from environment variables"""

    # Fields without defaults (required parameters)
    server_url: str
    username: str
    password: str
    client_id: str
    client_secret: str

    # Fields with defaults (optional parameters with sensible defaults)
    timeout: float = 30.0
    access_token: dict | None = None
    options: ClientOptions = field(default_factory=ClientOptions)

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "ClientConfig":
        """Load configuration from environment variables

        A .env file is loaded first if present; variables already set in
        the environment take precedence.

        Args:
            env_file: Path of the .env file (default: search from cwd)

        Returns:
            ClientConfig instance with values from environment

        Raises:
            ValueError: If required environment variables are missing or
                invalid
        """
        load_dotenv(env_file)

        required_vars = {
            "HAYSTACK_SERVER_URL": os.getenv("HAYSTACK_SERVER_URL"),
            "HAYSTACK_USERNAME": os.getenv("HAYSTACK_USERNAME"),
            "HAYSTACK_PASSWORD": os.getenv("HAYSTACK_PASSWORD"),
            "HAYSTACK_CLIENT_ID": os.getenv("HAYSTACK_CLIENT_ID"),
            "HAYSTACK_CLIENT_SECRET": os.getenv("HAYSTACK_CLIENT_SECRET"),
        }
        missing = [k for k, v in required_vars.items() if not v]
        if missing:
            raise ValueError(f"Missing client configuration: {missing}")

        timeout_env = os.getenv("HAYSTACK_TIMEOUT", "30")
        try:
            timeout = float(timeout_env)
        except ValueError as e:
            raise ValueError(
                f"HAYSTACK_TIMEOUT must be a number, got: {timeout_env}"
            ) from e

        options = ClientOptions(
            impersonate_as=os.getenv("HAYSTACK_IMPERSONATE") or None,
            accept_gzip=_env_flag("HAYSTACK_ACCEPT_GZIP", True),
            progress_enabled=_env_flag("HAYSTACK_PROGRESS", False),
        )

        config = cls(
            server_url=str(required_vars["HAYSTACK_SERVER_URL"]),
            username=str(required_vars["HAYSTACK_USERNAME"]),
            password=str(required_vars["HAYSTACK_PASSWORD"]),
            client_id=str(required_vars["HAYSTACK_CLIENT_ID"]),
            client_secret=str(required_vars["HAYSTACK_CLIENT_SECRET"]),
            timeout=timeout,
            options=options,
        )

        logger.info("Configuration loaded:")
        logger.info(f"  Server: {config.server_url}")
        logger.info(f"  User: {config.username}")
        logger.info(f"  Client ID: {config.client_id}")
        logger.info(f"  Timeout: {config.timeout}s")
        logger.info(
            f"  Impersonate: {options.impersonate_as or 'Not configured'}"
        )
        logger.info(f"  Accept gzip: {options.accept_gzip}")
        logger.info(f"  Progress: {options.progress_enabled}")

        return config
