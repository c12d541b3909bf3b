"""
Exception hierarchy for certificate generation.

Every failure raised by the generator derives from CertGenError so callers can
tell cryptographic, storage and configuration problems apart while still
catching them with a single except clause.
"""

from typing import Optional


class CertGenError(Exception):
    """Base class for certificate generation failures.

    Attributes:
        message: Human-readable description
        stage: Orchestration stage the error surfaced in (CA, Node, Client)
    """

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def with_stage(self, stage: str) -> "CertGenError":
        """Attach the failing stage, keeping the innermost one if already set."""
        if self.stage is None:
            self.stage = stage
        return self

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class ConfigParseError(CertGenError, ValueError):
    """A duration or other configuration value could not be parsed."""


class StoreAccessError(CertGenError):
    """The secret store failed for a reason other than a missing secret."""


class SecretNotFound(CertGenError):
    """The requested secret does not exist in the store."""


class StoreConflict(CertGenError):
    """A concurrent writer changed the secret between load and save."""


class MissingCredentialMaterial(CertGenError):
    """A user-supplied CA secret is absent or lacks its key or certificate."""


class KeyGenerationFailed(CertGenError):
    """Private key generation failed."""


class SigningFailed(CertGenError):
    """Building or signing a certificate failed."""


class PersistenceFailed(CertGenError):
    """A bundle was generated but could not be saved to the store."""


class WorkAreaError(CertGenError):
    """The scoped working directory could not be written or read."""


class RunCancelled(CertGenError):
    """The run was cancelled or its deadline passed."""
