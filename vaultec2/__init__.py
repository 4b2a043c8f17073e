"""
vaultec2 - Provision an EC2 instance tagged with a value read from Vault.

The package resolves input variables, authenticates to Vault with AppRole,
reads a KV v2 document and reconciles a single EC2 instance whose tags embed
the fetched value. Tags are plain text: this is a demonstration of provider
integration, not a secret distribution mechanism.
"""

__version__ = "0.1.0"
__author__ = "vaultec2 maintainers"
