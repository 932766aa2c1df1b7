"""
Configuration Management for the RPC Server

This module handles environment-based configuration using .env files
and provides centralized access to all configurable parameters.
"""

import os
from typing import Any, List
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass
class NetworkConfig:
    """Network-related configuration."""
    default_port: int = 4321
    default_host: str = "0.0.0.0"


@dataclass
class RPCConfig:
    """RPC server and client configuration."""
    max_request_size_mb: int = 50
    start_immediately: bool = False
    verbosity: int = 1
    client_timeout_seconds: float = 30.0
    client_max_retries: int = 3
    client_retry_delay: float = 1.0


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_file_path: str = "./logs/ezrpc.log"
    enable_file_logging: bool = False
    enable_console_logging: bool = True


@dataclass
class SecurityConfig:
    """Cross-origin configuration."""
    enable_cors: bool = True
    allowed_origins: str = "*"

    def get_allowed_origins(self) -> List[str]:
        """Split the comma separated origin list."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


class Config:
    """
    Centralized configuration management.

    Loads configuration from environment variables and .env files.
    """

    def __init__(self, env_file: str = ".env"):
        """
        Initialize configuration.

        Args:
            env_file: Path to .env file (optional)
        """
        self.env_file = env_file
        self._load_env_file()
        self._initialize_configs()

    def _load_env_file(self):
        """Load environment variables from .env file if available."""
        if os.path.exists(self.env_file):
            load_dotenv(self.env_file)

    def _get_env(self, key: str, default: Any, type_cast: type = str) -> Any:
        """Get environment variable with type casting and default."""
        value = os.environ.get(key, default)

        if type_cast == bool:
            if isinstance(value, str):
                return value.lower() in ('true', '1', 'yes', 'on')
            return bool(value)

        try:
            return type_cast(value)
        except (ValueError, TypeError):
            return default

    def _initialize_configs(self):
        """Initialize all configuration sections."""
        self.network = NetworkConfig(
            default_port=self._get_env("RPC_PORT", 4321, int),
            default_host=self._get_env("RPC_HOST", "0.0.0.0")
        )

        self.rpc = RPCConfig(
            max_request_size_mb=self._get_env("RPC_MAX_REQUEST_SIZE_MB", 50, int),
            start_immediately=self._get_env("RPC_START_IMMEDIATELY", False, bool),
            verbosity=self._get_env("RPC_VERBOSITY", 1, int),
            client_timeout_seconds=self._get_env("RPC_CLIENT_TIMEOUT_SECONDS", 30.0, float),
            client_max_retries=self._get_env("RPC_CLIENT_MAX_RETRIES", 3, int),
            client_retry_delay=self._get_env("RPC_CLIENT_RETRY_DELAY", 1.0, float)
        )

        self.logging = LoggingConfig(
            level=self._get_env("LOG_LEVEL", "INFO"),
            format=self._get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file_path=self._get_env("LOG_FILE_PATH", "./logs/ezrpc.log"),
            enable_file_logging=self._get_env("ENABLE_FILE_LOGGING", False, bool),
            enable_console_logging=self._get_env("ENABLE_CONSOLE_LOGGING", True, bool)
        )

        self.security = SecurityConfig(
            enable_cors=self._get_env("ENABLE_CORS", True, bool),
            allowed_origins=self._get_env("ALLOWED_ORIGINS", "*")
        )

    def get_host_port(self) -> tuple[str, int]:
        """Get the host and port the server binds to."""
        return self.network.default_host, self.network.default_port

    def get_max_request_bytes(self) -> int:
        """Get the request body limit in bytes."""
        return self.rpc.max_request_size_mb * 1024 * 1024

    def to_dict(self) -> dict:
        """Convert configuration to dictionary for debugging."""
        return {
            "network": self.network.__dict__,
            "rpc": self.rpc.__dict__,
            "logging": self.logging.__dict__,
            "security": self.security.__dict__
        }


# Global configuration instance
config = Config()

