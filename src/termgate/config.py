"""Configuration management for termgate."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from termgate.errors import ConfigError

AUTH_METHODS = ("anonymous", "password", "public_key", "password_or_key")


@dataclass
class ThrottleConfig:
    """Failed password backoff configuration."""

    initial_delay_ms: int = 1000
    max_delay_ms: int = 60_000


@dataclass
class AuthConfig:
    """Authentication configuration.

    Only used when the server is started from a config file; embedders
    pass an AuthMethod with their own callbacks instead.
    """

    method: str = "anonymous"
    users: dict[str, str] = field(default_factory=dict)  # username -> password
    authorized_keys: str | None = None  # Path to an authorized_keys file


@dataclass
class Config:
    """Server configuration."""

    port: int = 2222
    bind_address: str = "0.0.0.0"
    host_key_directory: str = "~/.config/termgate/host_keys"
    max_sessions: int | None = None
    send_timeout_ms: int = 250
    login_timeout: float = 120.0  # seconds
    log_level: str = "INFO"
    log_file: str | None = None
    auth: AuthConfig = field(default_factory=AuthConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)

    def __post_init__(self):
        if self.auth.method not in AUTH_METHODS:
            raise ConfigError(
                f"Unknown auth method {self.auth.method!r}, "
                f"expected one of {', '.join(AUTH_METHODS)}"
            )
        if self.max_sessions is not None and self.max_sessions < 1:
            raise ConfigError("max_sessions must be at least 1")

    @property
    def send_timeout(self) -> float:
        """Relay write timeout in seconds."""
        return self.send_timeout_ms / 1000.0


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "termgate" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        return yaml.safe_load(content)
    except yaml.YAMLError:
        return None


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.

    Raises:
        ConfigError: If a value in the file is out of range.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if data is None:
        return Config()

    # Parse auth config section
    auth_data = data.get("auth", {})
    auth_config = AuthConfig(
        method=auth_data.get("method", AuthConfig.method),
        users=dict(auth_data.get("users", {})),
        authorized_keys=auth_data.get("authorized_keys", AuthConfig.authorized_keys),
    )

    # Parse throttle config section
    throttle_data = data.get("throttle", {})
    throttle_config = ThrottleConfig(
        initial_delay_ms=throttle_data.get(
            "initial_delay_ms", ThrottleConfig.initial_delay_ms
        ),
        max_delay_ms=throttle_data.get("max_delay_ms", ThrottleConfig.max_delay_ms),
    )

    return Config(
        port=data.get("port", Config.port),
        bind_address=data.get("bind_address", Config.bind_address),
        host_key_directory=data.get("host_key_directory", Config.host_key_directory),
        max_sessions=data.get("max_sessions", Config.max_sessions),
        send_timeout_ms=data.get("send_timeout_ms", Config.send_timeout_ms),
        login_timeout=data.get("login_timeout", Config.login_timeout),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        auth=auth_config,
        throttle=throttle_config,
    )
