"""
Secret storage for certificate bundles.

Defines the narrow load / create-or-update interface the generator talks to,
an in-memory implementation, and a file-backed implementation that keeps each
secret as an AES-256-GCM encrypted JSON document.
"""

import base64
import copy
import json
import os
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..error_handling import SecretNotFound, StoreAccessError, StoreConflict

SECRET_TYPE_OPAQUE = "Opaque"
SECRET_TYPE_TLS = "kubernetes.io/tls"

CA_CERT_KEY = "ca.crt"
CA_PRIVATE_KEY = "ca.key"
TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY = "tls.key"


@dataclass
class StoredSecret:
    """A named bundle of key material as held by the store.

    Attributes:
        name: Secret name
        namespace: Namespace the secret lives in
        secret_type: Opaque (CA) or kubernetes.io/tls (node, client)
        data: Key material by entry name (ca.crt, tls.key, ...)
        annotations: String metadata, including the certificate lifetime
        resource_version: Incremented on every write; used for
            compare-and-swap updates
    """
    name: str
    namespace: str
    secret_type: str
    data: dict[str, bytes] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    resource_version: int = 0

    def get(self, key: str) -> bytes:
        """Return a data entry, or empty bytes if it is missing."""
        return self.data.get(key) or b""

    @property
    def ca_cert(self) -> bytes:
        return self.get(CA_CERT_KEY)

    @property
    def ca_key(self) -> bytes:
        return self.get(CA_PRIVATE_KEY)

    @property
    def tls_cert(self) -> bytes:
        return self.get(TLS_CERT_KEY)

    @property
    def tls_key(self) -> bytes:
        return self.get(TLS_PRIVATE_KEY)

    def to_dict(self, include_data: bool = False) -> dict:
        """Convert to dictionary.

        Args:
            include_data: Include the (base64 encoded) key material

        Returns:
            Dictionary representation
        """
        result = {
            "name": self.name,
            "namespace": self.namespace,
            "type": self.secret_type,
            "annotations": dict(self.annotations),
            "resource_version": self.resource_version,
            "keys": sorted(self.data),
        }
        if include_data:
            result["data"] = {
                k: base64.b64encode(v).decode() for k, v in self.data.items()
            }
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "StoredSecret":
        """Rebuild a secret from to_dict(include_data=True) output."""
        return cls(
            name=data["name"],
            namespace=data["namespace"],
            secret_type=data["type"],
            data={k: base64.b64decode(v) for k, v in data.get("data", {}).items()},
            annotations=dict(data.get("annotations", {})),
            resource_version=int(data.get("resource_version", 0)),
        )


class SecretStore(ABC):
    """Interface to the persisted secret store.

    Implementations must raise SecretNotFound for a missing secret and
    StoreAccessError for every other read or write failure, and must honour
    expected_version: None means create-if-absent, an integer means the write
    only succeeds if the stored resource_version still matches.
    """

    @abstractmethod
    def load(self, name: str, namespace: str) -> StoredSecret:
        """Load a secret.

        Raises:
            SecretNotFound: If the secret does not exist
            StoreAccessError: If the store cannot be read
        """
        pass

    @abstractmethod
    def create_or_update(
        self,
        name: str,
        namespace: str,
        secret_type: str,
        data: dict[str, bytes],
        annotations: dict[str, str],
        expected_version: Optional[int] = None,
    ) -> StoredSecret:
        """Create or replace a secret.

        Args:
            name: Secret name
            namespace: Namespace
            secret_type: Opaque or kubernetes.io/tls
            data: Key material
            annotations: Metadata annotations
            expected_version: resource_version the caller loaded, or None
                to create a secret that must not exist yet

        Returns:
            The stored secret with its new resource_version

        Raises:
            StoreConflict: If the secret changed since it was loaded
            StoreAccessError: If the store cannot be written
        """
        pass

    def get_or_none(self, name: str, namespace: str) -> Optional[StoredSecret]:
        """Load a secret, returning None instead of raising SecretNotFound."""
        try:
            return self.load(name, namespace)
        except SecretNotFound:
            return None


class InMemorySecretStore(SecretStore):
    """Process-local secret store, used for tests and embedding."""

    def __init__(self):
        self._secrets: dict[tuple[str, str], StoredSecret] = {}
        self._lock = threading.Lock()

    def load(self, name: str, namespace: str) -> StoredSecret:
        with self._lock:
            secret = self._secrets.get((namespace, name))
            if secret is None:
                raise SecretNotFound(f"secret {namespace}/{name} not found")
            return copy.deepcopy(secret)

    def create_or_update(
        self,
        name: str,
        namespace: str,
        secret_type: str,
        data: dict[str, bytes],
        annotations: dict[str, str],
        expected_version: Optional[int] = None,
    ) -> StoredSecret:
        with self._lock:
            current = self._secrets.get((namespace, name))
            _check_version(name, namespace, current, expected_version)

            secret = StoredSecret(
                name=name,
                namespace=namespace,
                secret_type=secret_type,
                data=dict(data),
                annotations=dict(annotations),
                resource_version=(current.resource_version if current else 0) + 1,
            )
            self._secrets[(namespace, name)] = secret
            return copy.deepcopy(secret)

    def delete(self, name: str, namespace: str) -> bool:
        """Delete a secret.

        Returns:
            True if deleted, False if not found
        """
        with self._lock:
            return self._secrets.pop((namespace, name), None) is not None

    def names(self, namespace: str) -> list[str]:
        """List secret names in a namespace."""
        with self._lock:
            return sorted(n for ns, n in self._secrets if ns == namespace)


class FileSecretStore(SecretStore):
    """AES-256-GCM encrypted secret storage on the local filesystem.

    Each secret is one file, <store_path>/<namespace>/<name>.enc, encrypted
    with a random machine key kept in a separate key file.
    """

    NONCE_SIZE = 12
    KEY_SIZE = 32  # 256 bits

    def __init__(self, store_path: Optional[Path] = None, key_file: Optional[Path] = None):
        """Initialize the secret store.

        Args:
            store_path: Directory holding the encrypted secrets
            key_file: Path to the key file (created if not exists)
        """
        self.store_path = Path(store_path) if store_path else self._default_store_path()
        self.key_file = Path(key_file) if key_file else self.store_path / ".keyfile"
        self._encryption_key: Optional[bytes] = None

    @staticmethod
    def _default_store_path() -> Path:
        """Get the default secret store path."""
        if os.name == "nt":
            base = Path(os.environ.get("LOCALAPPDATA", "~"))
        else:
            base = Path(os.environ.get("XDG_DATA_HOME", "~/.local/share"))
        return base.expanduser() / "crdb-self-signer" / "secrets"

    def _secret_path(self, name: str, namespace: str) -> Path:
        return self.store_path / namespace / f"{name}.enc"

    def _ensure_key(self) -> bytes:
        """Ensure the encryption key exists and return it."""
        if self._encryption_key:
            return self._encryption_key

        try:
            self.key_file.parent.mkdir(parents=True, exist_ok=True)
            if not self.key_file.exists():
                self._create_key_file()
            key = self.key_file.read_bytes()
        except OSError as e:
            raise StoreAccessError(f"failed to access key file {self.key_file}: {e}") from e

        if len(key) != self.KEY_SIZE:
            raise StoreAccessError(f"key file {self.key_file} is corrupt (expected {self.KEY_SIZE} bytes)")
        self._encryption_key = key
        return key

    def _create_key_file(self) -> None:
        """Publish a new random key unless another process already did.

        The key is written to a private temp file and hard-linked into place,
        so readers never see a partial key and the first writer wins.
        """
        tmp_path = self.key_file.with_name(f"{self.key_file.name}.tmp-{secrets.token_hex(4)}")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(secrets.token_bytes(self.KEY_SIZE))
            try:
                os.link(tmp_path, self.key_file)
            except FileExistsError:
                pass
        finally:
            tmp_path.unlink(missing_ok=True)

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data using AES-256-GCM."""
        key = self._ensure_key()
        nonce = secrets.token_bytes(self.NONCE_SIZE)
        return nonce + AESGCM(key).encrypt(nonce, data, None)

    def _decrypt(self, data: bytes) -> bytes:
        """Decrypt data using AES-256-GCM."""
        key = self._ensure_key()
        nonce = data[:self.NONCE_SIZE]
        ciphertext = data[self.NONCE_SIZE:]
        return AESGCM(key).decrypt(nonce, ciphertext, None)

    def _read(self, name: str, namespace: str) -> Optional[StoredSecret]:
        path = self._secret_path(name, namespace)
        try:
            encrypted = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreAccessError(f"failed to read secret {namespace}/{name}: {e}") from e

        try:
            document = json.loads(self._decrypt(encrypted).decode())
            return StoredSecret.from_dict(document)
        except InvalidTag as e:
            raise StoreAccessError(
                f"secret {namespace}/{name} could not be decrypted; the key file may have changed"
            ) from e
        except (ValueError, KeyError) as e:
            raise StoreAccessError(f"secret {namespace}/{name} is corrupt: {e}") from e

    def load(self, name: str, namespace: str) -> StoredSecret:
        secret = self._read(name, namespace)
        if secret is None:
            raise SecretNotFound(f"secret {namespace}/{name} not found")
        return secret

    def create_or_update(
        self,
        name: str,
        namespace: str,
        secret_type: str,
        data: dict[str, bytes],
        annotations: dict[str, str],
        expected_version: Optional[int] = None,
    ) -> StoredSecret:
        current = self._read(name, namespace)
        _check_version(name, namespace, current, expected_version)

        secret = StoredSecret(
            name=name,
            namespace=namespace,
            secret_type=secret_type,
            data=dict(data),
            annotations=dict(annotations),
            resource_version=(current.resource_version if current else 0) + 1,
        )

        path = self._secret_path(name, namespace)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            payload = self._encrypt(json.dumps(secret.to_dict(include_data=True)).encode())
            if expected_version is None:
                # O_EXCL makes create-if-absent atomic against other writers
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
                with os.fdopen(fd, "wb") as f:
                    f.write(payload)
            else:
                tmp_path = path.with_suffix(f".tmp-{secrets.token_hex(4)}")
                fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
                with os.fdopen(fd, "wb") as f:
                    f.write(payload)
                os.replace(tmp_path, path)
        except FileExistsError as e:
            raise StoreConflict(f"secret {namespace}/{name} was created concurrently") from e
        except OSError as e:
            raise StoreAccessError(f"failed to write secret {namespace}/{name}: {e}") from e

        return secret

    def delete(self, name: str, namespace: str) -> bool:
        """Delete a secret.

        Returns:
            True if deleted, False if not found
        """
        path = self._secret_path(name, namespace)
        if not path.exists():
            return False
        path.unlink()
        return True


def _check_version(
    name: str,
    namespace: str,
    current: Optional[StoredSecret],
    expected_version: Optional[int],
) -> None:
    """Enforce create-if-absent / compare-and-swap semantics."""
    if expected_version is None:
        if current is not None:
            raise StoreConflict(
                f"secret {namespace}/{name} already exists (version {current.resource_version})"
            )
        return

    if current is None:
        raise StoreConflict(f"secret {namespace}/{name} was deleted concurrently")

    if current.resource_version != expected_version:
        raise StoreConflict(
            f"secret {namespace}/{name} changed concurrently "
            f"(expected version {expected_version}, found {current.resource_version})"
        )
