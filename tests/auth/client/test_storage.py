"""Tests for the on-disk credential store.

Covers the per-server namespace, schema validation on read, atomic writes,
idempotent deletes and the create-if-absent primitive behind the lockfile.
"""

import json
import logging
import os

import pytest

from relay.auth.client.models.coordination import CoordinationRecord
from relay.auth.client.models.registration import ClientInformation
from relay.auth.client.models.tokens import OAuthTokens
from relay.auth.client.primitives.storage import (
    ArtifactKind,
    CredentialStore,
    default_config_dir,
    normalize_server_url,
    server_identity,
)


class TestServerIdentity:
    def test_same_url_gives_same_identity(self):
        assert server_identity("https://mcp.example.com/sse") == server_identity(
            "https://mcp.example.com/sse"
        )

    def test_equivalent_spellings_share_identity(self):
        # Arrange
        canonical = server_identity("https://mcp.example.com/")

        # Act & Assert
        assert server_identity("HTTPS://MCP.Example.com") == canonical
        assert server_identity("https://mcp.example.com:443/") == canonical
        assert server_identity("https://mcp.example.com/#fragment") == canonical

    def test_distinct_urls_give_distinct_identities(self):
        identities = {
            server_identity("https://mcp.example.com/a"),
            server_identity("https://mcp.example.com/b"),
            server_identity("http://mcp.example.com/a"),
            server_identity("https://mcp.example.com:8443/a"),
        }
        assert len(identities) == 4

    def test_resource_and_headers_change_identity(self):
        base = server_identity("https://mcp.example.com/mcp")

        assert server_identity("https://mcp.example.com/mcp", resource="r1") != base
        assert (
            server_identity("https://mcp.example.com/mcp", headers={"X-Tenant": "a"})
            != base
        )

    def test_identity_is_sha256_hex(self):
        identity = server_identity("https://mcp.example.com")

        assert len(identity) == 64
        int(identity, 16)

    def test_normalize_keeps_path_and_query(self):
        assert (
            normalize_server_url("https://Example.com:8080/Path?x=1")
            == "https://example.com:8080/Path?x=1"
        )


class TestDefaultConfigDir:
    def test_environment_override(self, tmp_path):
        config_dir = default_config_dir({"MCP_REMOTE_CONFIG_DIR": str(tmp_path)})

        assert config_dir.parent == tmp_path
        assert config_dir.name.startswith("relay-")

    def test_defaults_to_home(self):
        config_dir = default_config_dir({})

        assert config_dir.parent.name == ".mcp-auth"


class TestReadWrite:
    def test_tokens_round_trip(self, store, identity):
        # Arrange
        tokens = OAuthTokens(
            access_token="tok1", refresh_token="ref1", expires_in=3600, scope="read"
        )

        # Act
        assert store.write(identity, ArtifactKind.TOKENS, tokens)
        result = store.read(identity, ArtifactKind.TOKENS)

        # Assert
        assert result == tokens

    def test_client_info_round_trip_keeps_custom_metadata(self, store, identity):
        client_info = ClientInformation(
            client_id="client-1",
            redirect_uris=["http://localhost:3334/oauth/callback"],
            vendor_extension="kept",
        )

        store.write(identity, ArtifactKind.CLIENT_INFO, client_info)
        result = store.read(identity, ArtifactKind.CLIENT_INFO)

        assert result == client_info
        assert result.model_extra == {"vendor_extension": "kept"}

    def test_code_verifier_round_trip(self, store, identity):
        store.write(identity, ArtifactKind.CODE_VERIFIER, "verifier-abc")

        assert store.read(identity, ArtifactKind.CODE_VERIFIER) == "verifier-abc"

    def test_files_live_in_server_namespace(self, store, identity):
        store.write(identity, ArtifactKind.TOKENS, OAuthTokens(access_token="tok"))

        path = store.config_dir / identity / "tokens.json"
        assert path.exists()
        assert json.loads(path.read_text()) == {"access_token": "tok"}

    def test_files_are_private(self, store, identity):
        store.write(identity, ArtifactKind.CODE_VERIFIER, "secret")

        mode = store.path_for(identity, ArtifactKind.CODE_VERIFIER).stat().st_mode
        assert mode & 0o077 == 0

    def test_missing_artifact_reads_as_absent(self, store, identity):
        for kind in ArtifactKind:
            assert store.read(identity, kind) is None

    def test_write_leaves_no_temporary_files(self, store, identity):
        store.write(identity, ArtifactKind.TOKENS, OAuthTokens(access_token="a"))
        store.write(identity, ArtifactKind.TOKENS, OAuthTokens(access_token="b"))

        assert sorted(os.listdir(store.namespace(identity))) == ["tokens.json"]
        assert store.read(identity, ArtifactKind.TOKENS).access_token == "b"

    def test_write_failure_reports_false(self, store, identity, monkeypatch):
        def failing_replace(src, dst):
            raise PermissionError("read-only filesystem")

        monkeypatch.setattr(os, "replace", failing_replace)

        assert not store.write(identity, ArtifactKind.TOKENS, OAuthTokens(access_token="a"))


class TestSchemaValidation:
    def test_corrupt_json_is_absent(self, store, identity, caplog):
        # Arrange
        path = store.path_for(identity, ArtifactKind.TOKENS)
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        # Act
        with caplog.at_level(logging.WARNING):
            result = store.read(identity, ArtifactKind.TOKENS)

        # Assert
        assert result is None
        assert "Schema validation failed" in caplog.text

    def test_wrong_shape_is_absent(self, store, identity):
        path = store.path_for(identity, ArtifactKind.CLIENT_INFO)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"client_name": "no id"}))

        assert store.read(identity, ArtifactKind.CLIENT_INFO) is None

    @pytest.mark.parametrize("expires_in", ["soon", "3600", True, None])
    def test_unusual_expires_in_is_kept_verbatim(self, store, identity, expires_in):
        path = store.path_for(identity, ArtifactKind.TOKENS)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"access_token": "t", "expires_in": expires_in}))

        tokens = store.read(identity, ArtifactKind.TOKENS)

        assert tokens.access_token == "t"
        assert tokens.expires_in == expires_in
        assert type(tokens.expires_in) is type(expires_in)

    def test_negative_expires_in_is_kept(self, store, identity):
        store.write(
            identity, ArtifactKind.TOKENS, OAuthTokens(access_token="t", expires_in=-5)
        )

        assert store.read(identity, ArtifactKind.TOKENS).expires_in == -5

    def test_empty_verifier_is_absent(self, store, identity):
        path = store.path_for(identity, ArtifactKind.CODE_VERIFIER)
        path.parent.mkdir(parents=True)
        path.write_text("")

        assert store.read(identity, ArtifactKind.CODE_VERIFIER) is None


class TestDelete:
    @pytest.mark.parametrize("kind", list(ArtifactKind))
    def test_delete_then_read_is_absent(self, store, identity, kind):
        # Arrange
        artifact = {
            ArtifactKind.CLIENT_INFO: ClientInformation(client_id="c"),
            ArtifactKind.TOKENS: OAuthTokens(access_token="t"),
            ArtifactKind.CODE_VERIFIER: "v",
            ArtifactKind.LOCK: CoordinationRecord(
                pid=1, server_identity=identity, acquired_at=0.0
            ),
        }[kind]
        store.write(identity, kind, artifact)

        # Act
        deleted = store.delete(identity, kind)

        # Assert
        assert deleted
        assert store.read(identity, kind) is None

    def test_delete_missing_artifact_succeeds(self, store, identity):
        assert store.delete(identity, ArtifactKind.TOKENS)
        assert store.delete(identity, ArtifactKind.TOKENS)

    def test_namespaces_are_isolated(self, store):
        first = server_identity("https://one.example.com")
        second = server_identity("https://two.example.com")
        store.write(first, ArtifactKind.TOKENS, OAuthTokens(access_token="one"))

        store.delete(second, ArtifactKind.TOKENS)

        assert store.read(first, ArtifactKind.TOKENS).access_token == "one"
        assert store.read(second, ArtifactKind.TOKENS) is None


class TestCreateExclusive:
    def test_first_create_wins(self, store, identity):
        first = CoordinationRecord(pid=1, server_identity=identity, acquired_at=1.0)
        second = CoordinationRecord(pid=2, server_identity=identity, acquired_at=2.0)

        assert store.create_exclusive(identity, ArtifactKind.LOCK, first)
        assert not store.create_exclusive(identity, ArtifactKind.LOCK, second)
        assert store.read(identity, ArtifactKind.LOCK).pid == 1

    def test_create_leaves_no_temporary_files(self, store, identity):
        record = CoordinationRecord(pid=1, server_identity=identity, acquired_at=1.0)

        store.create_exclusive(identity, ArtifactKind.LOCK, record)
        store.create_exclusive(identity, ArtifactKind.LOCK, record)

        assert os.listdir(store.namespace(identity)) == ["lock.json"]

    def test_store_accepts_plain_path_strings(self, tmp_path, identity):
        store = CredentialStore(str(tmp_path))

        store.write(identity, ArtifactKind.CODE_VERIFIER, "v")

        assert (tmp_path / identity / "code_verifier.txt").read_text() == "v"
