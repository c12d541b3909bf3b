"""
Security components for certificate provisioning.

Provides certificate issuance, secret storage and the scoped working area.
"""

from .certificate_issuer import (
    CertificateIssuer,
    CredentialBundle,
    node_hosts,
    load_certificate,
    load_private_key,
)
from .secret_store import (
    SecretStore,
    StoredSecret,
    InMemorySecretStore,
    FileSecretStore,
    SECRET_TYPE_OPAQUE,
    SECRET_TYPE_TLS,
)
from .work_area import WorkArea

__all__ = [
    "CertificateIssuer",
    "CredentialBundle",
    "node_hosts",
    "load_certificate",
    "load_private_key",
    "SecretStore",
    "StoredSecret",
    "InMemorySecretStore",
    "FileSecretStore",
    "SECRET_TYPE_OPAQUE",
    "SECRET_TYPE_TLS",
    "WorkArea",
]
