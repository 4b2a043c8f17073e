"""
Exception hierarchy for vaultec2.

Every failure in a run is fatal: errors are raised where they are detected
and reach the operator unchanged through the CLI.
"""

from typing import List, Optional


class VaultEc2Error(Exception):
    """Base exception for all vaultec2 errors."""

    category = "error"

    def __init__(self, message: str, context: Optional[str] = None):
        self.message = message
        self.context = context
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with optional context."""
        if self.context:
            return f"{self.message}\nContext: {self.context}"
        return self.message


class ConfigurationError(VaultEc2Error):
    """Raised when input variables or settings are invalid or missing."""

    category = "configuration"


class VaultError(VaultEc2Error):
    """Raised when the secret store rejects or fails a request."""

    category = "vault"

    def __init__(self, message: str, context: Optional[str] = None,
                 status_code: Optional[int] = None, errors: Optional[List[str]] = None):
        self.status_code = status_code
        self.errors = errors or []
        super().__init__(message, context)


class VaultUnreachableError(VaultError):
    """Raised when the Vault address cannot be reached."""

    category = "connection"


class AuthenticationError(VaultError):
    """Raised when the AppRole role_id/secret_id pair is rejected."""

    category = "authentication"


class AuthorizationError(VaultError):
    """Raised when a Vault policy denies the read."""

    category = "authorization"


class SecretNotFoundError(VaultError):
    """Raised when the mount or document does not exist."""

    category = "not_found"


class SecretEngineMismatchError(VaultError):
    """Raised when the mount is not a KV version 2 engine."""

    category = "not_found"


class MissingSecretKeyError(VaultEc2Error):
    """Raised when a declaration references a key absent from the document."""

    category = "evaluation"

    def __init__(self, key: str, mount: str, name: str):
        self.key = key
        super().__init__(
            f"Key '{key}' not found in secret {mount}/{name}",
            context="the instance tags reference this key",
        )


class ProviderError(VaultEc2Error):
    """Raised when the compute provider rejects a call."""

    category = "provider"

    def __init__(self, message: str, code: Optional[str] = None, context: Optional[str] = None,
                 instance_id: Optional[str] = None):
        self.code = code
        # Set when the instance was created before the failure
        self.instance_id = instance_id
        super().__init__(message, context)


class StateError(VaultEc2Error):
    """Raised when recorded state cannot be read or written."""

    category = "state"


class StateLockedError(StateError):
    """Raised when another run holds the workspace lock."""


class TerraformError(VaultEc2Error):
    """Raised when the terraform CLI fails."""

    category = "engine"

    def __init__(self, message: str, last_lines: Optional[List[str]] = None):
        self.last_lines = last_lines or []
        context = "\n".join(self.last_lines) if self.last_lines else None
        super().__init__(message, context)
