"""On-disk credential store shared by every process on the machine.

Artifacts live under ``<config_dir>/<server identity>/`` with fixed file names,
so all processes talking to the same server see the same client registration,
tokens, PKCE verifier and coordination record. Reads are validated against the
artifact's schema; anything that fails validation is logged and treated as
absent so one corrupted file never crashes a process. Writes go to a
temporary file in the same directory and are renamed into place, so readers
never observe a partial artifact.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, ValidationError

from relay.auth.client.models.coordination import CoordinationRecord
from relay.auth.client.models.registration import ClientInformation
from relay.auth.client.models.tokens import OAuthTokens
from relay.version import VERSION

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "MCP_REMOTE_CONFIG_DIR"
DEFAULT_CONFIG_ROOT = Path("~/.mcp-auth")

_DEFAULT_PORTS = {"http": 80, "https": 443}


class ArtifactKind(Enum):
    """Artifacts stored per server identity, valued by their file name."""

    CLIENT_INFO = "client_info.json"
    TOKENS = "tokens.json"
    CODE_VERIFIER = "code_verifier.txt"
    LOCK = "lock.json"

    @property
    def filename(self) -> str:
        return self.value

    @property
    def schema(self) -> type[BaseModel] | None:
        """Pydantic model for JSON artifacts, None for plain text."""
        return _SCHEMAS.get(self)


_SCHEMAS: dict[ArtifactKind, type[BaseModel]] = {
    ArtifactKind.CLIENT_INFO: ClientInformation,
    ArtifactKind.TOKENS: OAuthTokens,
    ArtifactKind.LOCK: CoordinationRecord,
}

Artifact = BaseModel | str


def normalize_server_url(server_url: str) -> str:
    """Normalize a server URL so equivalent spellings share an identity.

    Lower-cases scheme and host, drops default ports and the fragment, and
    turns an empty path into ``/``. Path and query are kept verbatim.
    """
    parts = urlsplit(server_url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    netloc = host
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo += f":{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    if parts.port and parts.port != _DEFAULT_PORTS.get(scheme):
        netloc += f":{parts.port}"
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def server_identity(
    server_url: str,
    resource: str | None = None,
    headers: Mapping[str, str] | None = None,
) -> str:
    """Derive the namespace key for a remote server.

    SHA-256 over the normalized URL, plus the authorization resource and
    custom headers when given, since those change which credentials the
    server issues.
    """
    material = normalize_server_url(server_url)
    if resource:
        material += f"\nresource={resource}"
    if headers:
        for name in sorted(headers, key=str.lower):
            material += f"\nheader={name.lower()}:{headers[name]}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def default_config_dir(environ: Mapping[str, str] | None = None) -> Path:
    """Resolve the credential directory.

    ``$MCP_REMOTE_CONFIG_DIR`` overrides the root; a version subdirectory keeps
    releases with different file formats apart.
    """
    environ = os.environ if environ is None else environ
    root = Path(environ.get(CONFIG_DIR_ENV) or DEFAULT_CONFIG_ROOT).expanduser()
    return root / f"relay-{VERSION}"


class CredentialStore:
    """Durable per-server storage of OAuth artifacts.

    Every operation is a blocking filesystem call. Writes are last-writer-wins;
    ``create_exclusive`` is the only create-if-absent primitive and backs the
    coordination lockfile.
    """

    def __init__(self, config_dir: Path | str | None = None):
        self.config_dir = (
            Path(config_dir).expanduser() if config_dir else default_config_dir()
        )

    def namespace(self, identity: str) -> Path:
        return self.config_dir / identity

    def path_for(self, identity: str, kind: ArtifactKind) -> Path:
        return self.namespace(identity) / kind.filename

    def read(self, identity: str, kind: ArtifactKind) -> Artifact | None:
        """Read and validate an artifact.

        Returns:
            The parsed model (or text for the code verifier), or None if the
            artifact is missing, unreadable or fails validation
        """
        raw = self.read_raw(identity, kind)
        if raw is None:
            return None

        schema = kind.schema
        try:
            if schema is None:
                text = raw.decode("utf-8")
                if not text:
                    logger.warning(f"Ignoring empty {kind.filename} for {identity}")
                    return None
                return text
            return schema.model_validate_json(raw)
        except (ValidationError, UnicodeDecodeError) as e:
            logger.warning(
                f"Schema validation failed for {kind.filename} of {identity}, "
                f"treating as absent: {e}"
            )
            return None

    def read_raw(self, identity: str, kind: ArtifactKind) -> bytes | None:
        """Read an artifact's bytes without validation."""
        path = self.path_for(identity, kind)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            logger.debug(f"No {kind.filename} stored for {identity}")
            return None
        except OSError as e:
            logger.warning(f"Could not read {path}: {e}")
            return None

    def write(self, identity: str, kind: ArtifactKind, artifact: Artifact) -> bool:
        """Atomically replace an artifact.

        Returns:
            True on success, False if the filesystem rejected the write
        """
        path = self.path_for(identity, kind)
        try:
            tmp_path = self._write_temporary(identity, kind, artifact)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            return False

        logger.debug(f"Wrote {kind.filename} for {identity}")
        return True

    def create_exclusive(
        self, identity: str, kind: ArtifactKind, artifact: Artifact
    ) -> bool:
        """Create an artifact only if it does not exist yet.

        The content is written to a temporary file first and hard-linked into
        place, so the artifact appears complete or not at all and an existing
        one is never overwritten.

        Returns:
            True if this call created the artifact, False if it already existed

        Raises:
            OSError: If the filesystem failed for any other reason
        """
        path = self.path_for(identity, kind)
        tmp_path = self._write_temporary(identity, kind, artifact)
        try:
            os.link(tmp_path, path)
            return True
        except FileExistsError:
            return False
        finally:
            _unlink_quietly(tmp_path)

    def delete(self, identity: str, kind: ArtifactKind) -> bool:
        """Delete an artifact. Deleting a missing artifact succeeds."""
        path = self.path_for(identity, kind)
        try:
            path.unlink()
            logger.debug(f"Deleted {kind.filename} for {identity}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to delete {path}: {e}")
            return False
        return True

    def exists(self, identity: str, kind: ArtifactKind) -> bool:
        return self.path_for(identity, kind).exists()

    def _ensure_namespace(self, identity: str) -> Path:
        namespace = self.namespace(identity)
        namespace.mkdir(mode=0o700, parents=True, exist_ok=True)
        return namespace

    def _write_temporary(
        self, identity: str, kind: ArtifactKind, artifact: Artifact
    ) -> str:
        namespace = self._ensure_namespace(identity)
        payload = _serialize(kind, artifact)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{kind.filename}.", suffix=".tmp", dir=namespace
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
        except BaseException:
            _unlink_quietly(tmp_path)
            raise
        return tmp_path


def _serialize(kind: ArtifactKind, artifact: Artifact | dict[str, Any]) -> bytes:
    if kind.schema is None:
        if not isinstance(artifact, str):
            raise TypeError(f"{kind.filename} expects text, got {type(artifact)}")
        return artifact.encode("utf-8")

    if isinstance(artifact, BaseModel):
        data = artifact.model_dump(mode="json", exclude_unset=True)
    else:
        data = kind.schema.model_validate(artifact).model_dump(
            mode="json", exclude_unset=True
        )
    return json.dumps(data, indent=2).encode("utf-8")


def _unlink_quietly(path: str | Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
