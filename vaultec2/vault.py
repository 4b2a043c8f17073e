"""
Vault client: AppRole login and KV version 2 reads over HTTP.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import requests

from .config import SecretStoreConfig
from .errors import (
    AuthenticationError,
    AuthorizationError,
    SecretEngineMismatchError,
    SecretNotFoundError,
    VaultError,
    VaultUnreachableError,
)
from .models import SecretDocument

logger = logging.getLogger(__name__)

APPROLE_LOGIN_PATH = "auth/approle/login"


def _vault_errors(response: requests.Response) -> List[str]:
    try:
        body = response.json()
    except ValueError:
        return []
    if isinstance(body, dict):
        return [str(e) for e in body.get("errors", [])]
    return []


class VaultSession:
    """
    One authenticated session against a Vault server.

    With ``reuse_token`` set, a single AppRole login is performed and the
    resulting token is used for every later request. Otherwise a new token
    is negotiated before each read.
    """

    def __init__(self, config: SecretStoreConfig, http: Optional[requests.Session] = None):
        self.config = config
        self.http = http or requests.Session()
        self._token: Optional[str] = None
        self.login_count = 0

    def __enter__(self) -> "VaultSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._token = None
        self.http.close()

    def _url(self, path: str) -> str:
        return f"{self.config.address}/v1/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self._url(path)
        try:
            return self.http.request(method, url, timeout=self.config.timeout, **kwargs)
        except requests.RequestException as e:
            raise VaultUnreachableError(
                f"Vault is unreachable at {self.config.address}",
                context=str(e),
            ) from e

    def login(self) -> str:
        """
        Log in with the configured AppRole credentials.

        Returns:
            Client token

        Raises:
            AuthenticationError: If Vault rejects the role_id/secret_id pair
        """
        response = self._request(
            "POST",
            APPROLE_LOGIN_PATH,
            json={"role_id": self.config.role_id, "secret_id": self.config.secret_id},
        )

        if response.status_code in (400, 401, 403):
            errors = _vault_errors(response)
            raise AuthenticationError(
                "AppRole login failed: invalid role_id or secret_id",
                context="; ".join(errors) or None,
                status_code=response.status_code,
                errors=errors,
            )
        if not response.ok:
            errors = _vault_errors(response)
            raise VaultError(
                f"AppRole login failed with HTTP {response.status_code}",
                context="; ".join(errors) or None,
                status_code=response.status_code,
                errors=errors,
            )

        try:
            token = response.json()["auth"]["client_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError("AppRole login response did not contain a client token") from e

        self._token = token
        self.login_count += 1
        logger.info("Logged in to Vault at %s with AppRole", self.config.address)
        return token

    def token(self) -> str:
        """Return a token for the next request, logging in as configured."""
        if self._token is None or not self.config.reuse_token:
            return self.login()
        return self._token

    def read_kv2(self, mount: str, name: str) -> SecretDocument:
        """
        Read the latest version of a KV v2 document.

        Args:
            mount: Mount path of the KV v2 engine (e.g. "kv")
            name: Document name within the mount

        Returns:
            SecretDocument with the document's key/value mapping
        """
        mount = mount.strip("/")
        name = name.strip("/")
        response = self._request(
            "GET",
            f"{mount}/data/{name}",
            headers={"X-Vault-Token": self.token()},
        )

        errors = _vault_errors(response)
        if response.status_code == 403:
            raise AuthorizationError(
                f"Permission denied reading {mount}/{name}",
                context="check the AppRole token policies",
                status_code=403,
                errors=errors,
            )
        if response.status_code == 404:
            raise SecretNotFoundError(
                f"Secret {mount}/{name} not found",
                context="check vault_kv_mount and vault_secret_name",
                status_code=404,
                errors=errors,
            )
        if not response.ok:
            raise VaultError(
                f"Reading {mount}/{name} failed with HTTP {response.status_code}",
                context="; ".join(errors) or None,
                status_code=response.status_code,
                errors=errors,
            )

        try:
            body: Dict[str, Any] = response.json()
        except ValueError as e:
            raise VaultError(f"Vault returned a non-JSON response for {mount}/{name}") from e

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or not isinstance(data.get("data"), dict) or "metadata" not in data:
            raise SecretEngineMismatchError(
                f"Mount '{mount}' did not return a KV version 2 document",
                context="the mount must be a kv-v2 secrets engine",
                status_code=response.status_code,
            )

        metadata = data.get("metadata") or {}
        # Non-string values are JSON-encoded, matching the vault terraform provider
        document = SecretDocument(
            mount=mount,
            name=name,
            data={str(k): v if isinstance(v, str) else json.dumps(v) for k, v in data["data"].items()},
            version=metadata.get("version"),
        )
        logger.info("Read secret %s (version %s, %d keys)", document.path, document.version, len(document.data))
        return document


def lookup_secret(config: SecretStoreConfig, mount: str, name: str,
                  http: Optional[requests.Session] = None) -> SecretDocument:
    """
    Log in and read one KV v2 document.

    Args:
        config: Vault provider configuration
        mount: KV v2 mount path
        name: Document name
        http: Optional pre-built HTTP session

    Returns:
        SecretDocument
    """
    with VaultSession(config, http=http) as session:
        if config.reuse_token:
            session.login()
        return session.read_kv2(mount, name)
