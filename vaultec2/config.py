"""
Provider configuration and tool settings.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from .errors import ConfigurationError
from .variables import InputVariables

DEFAULT_LOG_LEVEL = "WARNING"
DEFAULT_HTTP_TIMEOUT = 10.0

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class ComputeProviderConfig:
    """AWS provider settings, read once per run."""
    region: str


@dataclass(frozen=True)
class SecretStoreConfig:
    """Vault provider settings, read once per run."""
    address: str
    role_id: str
    secret_id: str = field(repr=False)
    reuse_token: bool = True
    timeout: float = DEFAULT_HTTP_TIMEOUT


@dataclass(frozen=True)
class Settings:
    """Tool settings read from VAULTEC2_* environment variables."""
    log_level: str
    http_timeout: float
    reuse_token: bool


def normalize_vault_address(address: str) -> str:
    """Strip surrounding whitespace and any trailing slash from a Vault address."""
    return address.strip().rstrip("/")


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Read tool settings from the environment.

    Args:
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Settings
    """
    if environ is None:
        environ = os.environ

    raw_timeout = environ.get("VAULTEC2_HTTP_TIMEOUT", str(DEFAULT_HTTP_TIMEOUT))
    try:
        http_timeout = float(raw_timeout)
    except ValueError:
        raise ConfigurationError(f"VAULTEC2_HTTP_TIMEOUT must be a number, got {raw_timeout!r}") from None
    if http_timeout <= 0:
        raise ConfigurationError("VAULTEC2_HTTP_TIMEOUT must be positive")

    log_level = environ.get("VAULTEC2_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigurationError(f"Unknown VAULTEC2_LOG_LEVEL: {log_level}")

    return Settings(
        log_level=log_level,
        http_timeout=http_timeout,
        reuse_token=_parse_bool("VAULTEC2_VAULT_REUSE_TOKEN", environ.get("VAULTEC2_VAULT_REUSE_TOKEN", "true")),
    )


def provider_configs(
    variables: InputVariables,
    reuse_token: bool = True,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> Tuple[ComputeProviderConfig, SecretStoreConfig]:
    """Build the two provider configurations from resolved variables."""
    compute = ComputeProviderConfig(region=variables.aws_region)
    secret_store = SecretStoreConfig(
        address=normalize_vault_address(variables.vault_address),
        role_id=variables.vault_role_id,
        secret_id=variables.vault_secret_id,
        reuse_token=reuse_token,
        timeout=timeout,
    )
    return compute, secret_store


def configure_logging(level: str = DEFAULT_LOG_LEVEL) -> None:
    """Configure root logging for CLI runs."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
