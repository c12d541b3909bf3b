"""
Error handling utilities for the certificate generator.

Provides the exception taxonomy and input validators.
"""

from .errors import (
    CertGenError,
    ConfigParseError,
    StoreAccessError,
    SecretNotFound,
    StoreConflict,
    MissingCredentialMaterial,
    KeyGenerationFailed,
    SigningFailed,
    PersistenceFailed,
    WorkAreaError,
    RunCancelled,
)
from .validators import (
    validate_namespace,
    validate_dns_label,
    validate_dns_subdomain,
    validate_secret_name,
    validate_key_size,
)

__all__ = [
    # Errors
    "CertGenError",
    "ConfigParseError",
    "StoreAccessError",
    "SecretNotFound",
    "StoreConflict",
    "MissingCredentialMaterial",
    "KeyGenerationFailed",
    "SigningFailed",
    "PersistenceFailed",
    "WorkAreaError",
    "RunCancelled",
    # Validators
    "validate_namespace",
    "validate_dns_label",
    "validate_dns_subdomain",
    "validate_secret_name",
    "validate_key_size",
]
