"""
CA management.

Obtains the CA key and certificate a run signs with: from a user-managed
secret, from the existing auto-managed secret when it is still ready, or by
generating a new CA and saving it.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from .config import SecretRole, SignerConfig
from .context import RunContext
from .error_handling import MissingCredentialMaterial
from .persistence import load_secret, persist_bundle
from .readiness import Readiness, SecretState, build_annotations, evaluate, has_required_material
from .security.certificate_issuer import CertificateIssuer, load_certificate, load_private_key
from .security.secret_store import (
    CA_CERT_KEY,
    CA_PRIVATE_KEY,
    SECRET_TYPE_OPAQUE,
    SecretStore,
    StoredSecret,
)
from .security.work_area import WorkArea

logger = logging.getLogger(__name__)

CA_CERT_FILE = "ca.crt"
CA_KEY_FILE = "ca.key"


@dataclass
class CAMaterial:
    """The CA a run signs node and client certificates with.

    Attributes:
        certificate: Parsed CA certificate
        private_key: Parsed CA private key
        cert_pem: CA certificate PEM, as stored
        key_pem: CA private key PEM, as stored
        source: "user-supplied", "existing", "generated" or "adopted"
        secret_name: Secret the material was loaded from or saved to
    """
    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey
    cert_pem: bytes
    key_pem: bytes
    source: str
    secret_name: str

    @property
    def generated(self) -> bool:
        return self.source == "generated"


def _parse_material(secret: StoredSecret, source: str) -> CAMaterial:
    """Parse CA material out of a secret.

    Raises:
        ValueError: If the key or certificate cannot be parsed
    """
    return CAMaterial(
        certificate=load_certificate(secret.ca_cert),
        private_key=load_private_key(secret.ca_key),
        cert_pem=secret.ca_cert,
        key_pem=secret.ca_key,
        source=source,
        secret_name=secret.name,
    )


class CAManager:
    """Decides whether to reuse, regenerate or reject the cluster CA."""

    def __init__(
        self,
        store: SecretStore,
        issuer: CertificateIssuer,
        config: SignerConfig,
        work_area: WorkArea,
        ctx: Optional[RunContext] = None,
    ):
        self.store = store
        self.issuer = issuer
        self.config = config
        self.work_area = work_area
        self.ctx = ctx or RunContext()

    def ensure_ca(
        self,
        namespace: str,
        ca_secret_name: str,
        user_secret_name: Optional[str] = None,
    ) -> CAMaterial:
        """Obtain a usable CA key and certificate.

        Args:
            namespace: Namespace holding the secrets
            ca_secret_name: Name of the auto-managed CA secret
            user_secret_name: Name of a user-managed CA secret; when given
                the CA is never generated

        Returns:
            The CA material, also written to the working area

        Raises:
            MissingCredentialMaterial: If the user-managed secret is absent
                or incomplete
            StoreAccessError: If the store cannot be read
            KeyGenerationFailed, SigningFailed: If a new CA cannot be created
            PersistenceFailed: If a new CA cannot be saved
        """
        if user_secret_name:
            material = self._use_user_supplied(namespace, user_secret_name)
        else:
            material = self._use_managed(namespace, ca_secret_name)

        self._write_work_area(material)
        return material

    def _use_user_supplied(self, namespace: str, secret_name: str) -> CAMaterial:
        logger.info(f"Skipping CA cert generation, using user provided CA secret [{secret_name}]")

        secret = load_secret(self.store, self.ctx, secret_name, namespace)
        if secret is None:
            raise MissingCredentialMaterial(
                f"user provided CA secret {namespace}/{secret_name} does not exist"
            )

        if not has_required_material(secret, SecretRole.CA):
            raise MissingCredentialMaterial(
                f"CA secret {namespace}/{secret_name} doesn't contain the required "
                f"{CA_CERT_KEY} and {CA_PRIVATE_KEY}"
            )

        try:
            return _parse_material(secret, "user-supplied")
        except ValueError as e:
            raise MissingCredentialMaterial(
                f"CA secret {namespace}/{secret_name} contains an unusable key or certificate: {e}"
            ) from e

    def _use_managed(self, namespace: str, secret_name: str) -> CAMaterial:
        secret = load_secret(self.store, self.ctx, secret_name, namespace)
        readiness = evaluate(secret, self.config.ca, SecretRole.CA)

        if readiness.ready:
            try:
                material = _parse_material(secret, "existing")
            except ValueError as e:
                readiness = Readiness(SecretState.PRESENT_STALE, f"stored CA is unusable: {e}")
            else:
                logger.info(f"CA secret [{secret_name}] is found in ready state, skipping CA generation")
                return material

        logger.info(f"Generating CA ({readiness.reason})")

        existing_key = None
        if secret is not None and self.config.allow_ca_key_reuse:
            existing_key = self._reusable_key(secret)

        self.ctx.check("generating the CA key and certificate")
        bundle = self.issuer.issue_ca(
            key_size=self.config.key_size,
            validity=self.config.ca.duration,
            existing_key=existing_key,
        )
        logger.debug(
            f"CA certificate valid from {bundle.not_before.isoformat()} "
            f"to {bundle.not_after.isoformat()}"
        )

        result = persist_bundle(
            self.store,
            self.ctx,
            SecretRole.CA,
            self.config.ca,
            secret_name,
            namespace,
            SECRET_TYPE_OPAQUE,
            {CA_CERT_KEY: bundle.certificate, CA_PRIVATE_KEY: bundle.private_key},
            build_annotations(bundle.not_before, bundle.not_after, self.config.ca),
            secret.resource_version if secret is not None else None,
        )

        if result.adopted:
            try:
                return _parse_material(result.secret, "adopted")
            except ValueError as e:
                raise MissingCredentialMaterial(
                    f"concurrently provisioned CA secret {namespace}/{secret_name} is unusable: {e}"
                ) from e

        logger.info(f"Generated and saved CA key and certificate in secret [{secret_name}]")
        return CAMaterial(
            certificate=bundle.cert,
            private_key=bundle.key,
            cert_pem=bundle.certificate,
            key_pem=bundle.private_key,
            source="generated",
            secret_name=secret_name,
        )

    def _reusable_key(self, secret: StoredSecret) -> Optional[rsa.RSAPrivateKey]:
        """Return the stored CA key if it can be re-signed with."""
        if not secret.ca_key:
            return None
        try:
            key = load_private_key(secret.ca_key)
        except ValueError as e:
            logger.warning(f"Stored CA key in [{secret.name}] is unusable, generating a new one: {e}")
            return None
        logger.info(f"Reusing the existing CA key from secret [{secret.name}]")
        return key

    def _write_work_area(self, material: CAMaterial) -> None:
        self.ctx.check("writing CA material to the working area")
        self.work_area.write(CA_CERT_FILE, material.cert_pem)
        self.work_area.write(CA_KEY_FILE, material.key_pem)
