"""
Tests for the Vault AppRole session and KV v2 lookup.
"""

from unittest.mock import Mock

import pytest
import requests

from vaultec2.config import SecretStoreConfig
from vaultec2.errors import (
    AuthenticationError,
    AuthorizationError,
    SecretEngineMismatchError,
    SecretNotFoundError,
    VaultError,
    VaultUnreachableError,
)
from vaultec2.vault import VaultSession, lookup_secret

from conftest import VAULT_ADDR, FakeResponse


def make_config(**kw):
    base = dict(address=VAULT_ADDR, role_id="r1", secret_id="s1", reuse_token=True, timeout=5.0)
    base.update(kw)
    return SecretStoreConfig(**base)


def test_login_returns_token(vault):
    session = VaultSession(make_config(), http=vault)

    token = session.login()

    assert token == "hvs.token1"
    assert vault.requests[0] == ("POST", f"{VAULT_ADDR}/v1/auth/approle/login")


def test_read_kv2_document(vault):
    with VaultSession(make_config(), http=vault) as session:
        document = session.read_kv2("kv", "secret")

    assert document.data == {"username": "alice"}
    assert document.version == 3
    assert document.path == "kv/secret"
    assert vault.requests[-1] == ("GET", f"{VAULT_ADDR}/v1/kv/data/secret")
    assert vault.closed


def test_non_string_values_json_encoded(vault):
    vault.documents[("kv", "secret")] = {"username": True, "port": 8200, "meta": {"team": "infra"}, "empty": None}

    with VaultSession(make_config(), http=vault) as session:
        document = session.read_kv2("kv", "secret")

    assert document.data == {
        "username": "true",
        "port": "8200",
        "meta": '{"team": "infra"}',
        "empty": "null",
    }


def test_token_reused_across_reads(vault):
    vault.documents[("kv", "other")] = {"username": "bob"}
    session = VaultSession(make_config(reuse_token=True), http=vault)

    session.read_kv2("kv", "secret")
    session.read_kv2("kv", "other")

    assert vault.logins == 1
    assert {token for _, _, token in vault.reads} == {"hvs.token1"}


def test_token_renegotiated_per_read(vault):
    session = VaultSession(make_config(reuse_token=False), http=vault)

    session.read_kv2("kv", "secret")
    session.read_kv2("kv", "secret")

    assert vault.logins == 2
    assert [token for _, _, token in vault.reads] == ["hvs.token1", "hvs.token2"]


def test_invalid_credentials(vault):
    session = VaultSession(make_config(secret_id="wrong"), http=vault)

    with pytest.raises(AuthenticationError) as exc:
        session.read_kv2("kv", "secret")

    assert exc.value.status_code == 400
    assert "invalid role or secret ID" in exc.value.errors
    assert vault.reads == []


def test_policy_denied(vault):
    vault.denied.add(("kv", "secret"))
    session = VaultSession(make_config(), http=vault)

    with pytest.raises(AuthorizationError) as exc:
        session.read_kv2("kv", "secret")

    assert exc.value.category == "authorization"


def test_document_not_found(vault):
    session = VaultSession(make_config(), http=vault)

    with pytest.raises(SecretNotFoundError, match="kv/missing"):
        session.read_kv2("kv", "missing")


def test_kv_version_mismatch(vault):
    vault.kv1_mounts.add("kv")
    session = VaultSession(make_config(), http=vault)

    with pytest.raises(SecretEngineMismatchError):
        session.read_kv2("kv", "secret")


def test_unreachable(vault):
    vault.unreachable = True
    session = VaultSession(make_config(), http=vault)

    with pytest.raises(VaultUnreachableError) as exc:
        session.login()

    assert exc.value.category == "connection"


def test_malformed_address(vault):
    vault.request = Mock(side_effect=requests.exceptions.MissingSchema("No scheme supplied"))
    session = VaultSession(make_config(address="vault:8200"), http=vault)

    with pytest.raises(VaultUnreachableError, match="vault:8200"):
        session.login()


def test_unexpected_status(vault):
    vault.request = lambda *a, **kw: FakeResponse(503, {"errors": ["Vault is sealed"]})
    session = VaultSession(make_config(), http=vault)

    with pytest.raises(VaultError, match="HTTP 503"):
        session.login()


def test_mount_and_name_slashes_stripped(vault):
    session = VaultSession(make_config(), http=vault)

    document = session.read_kv2("/kv/", "/secret")

    assert document.path == "kv/secret"


def test_lookup_secret(vault):
    document = lookup_secret(make_config(), "kv", "secret", http=vault)

    assert document.get("username") == "alice"
    assert vault.logins == 1
    assert vault.closed
