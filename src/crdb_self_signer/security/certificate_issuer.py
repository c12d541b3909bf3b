"""
PKI certificate issuance for CockroachDB clusters.

Generates the CA, node and client certificates used for mTLS between
CockroachDB nodes and their SQL clients.
"""

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    NoEncryption,
)

from ..error_handling import KeyGenerationFailed, SigningFailed

ORGANIZATION = "Cockroach"
CA_COMMON_NAME = "Cockroach CA"
NODE_COMMON_NAME = "node"
DEFAULT_PRINCIPAL = "root"


@dataclass
class CredentialBundle:
    """A private key, its certificate and the issuing CA certificate.

    Attributes:
        private_key: Private key PEM
        certificate: Certificate PEM
        ca_certificate: Issuing CA certificate PEM (None for the CA itself)
        not_before: Start of validity, as embedded in the certificate
        not_after: End of validity, as embedded in the certificate
        duration: Lifetime that was requested at issuance
        key: Parsed private key
        cert: Parsed certificate
    """
    private_key: bytes
    certificate: bytes
    ca_certificate: Optional[bytes]
    not_before: datetime
    not_after: datetime
    duration: timedelta
    key: rsa.RSAPrivateKey = field(repr=False)
    cert: x509.Certificate = field(repr=False)

    @property
    def fingerprint(self) -> str:
        """SHA256 fingerprint of the certificate."""
        return self.cert.fingerprint(hashes.SHA256()).hex().upper()

    @property
    def serial_number(self) -> int:
        return self.cert.serial_number

    def to_dict(self, include_private_key: bool = False) -> dict:
        """Convert to dictionary.

        Args:
            include_private_key: Include the private key in output

        Returns:
            Dictionary representation
        """
        result = {
            "certificate": self.certificate.decode(),
            "ca_certificate": self.ca_certificate.decode() if self.ca_certificate else None,
            "not_before": self.not_before.isoformat(),
            "not_after": self.not_after.isoformat(),
            "fingerprint": self.fingerprint,
        }
        if include_private_key:
            result["private_key"] = self.private_key.decode()
        return result


def node_hosts(
    public_service_name: str,
    discovery_service_name: str,
    namespace: str,
    cluster_domain: str,
) -> tuple[str, ...]:
    """Build the host names a node certificate must be valid for.

    Covers loopback access, the public service at every level of
    qualification, and every pod behind the discovery service.
    """
    return (
        "localhost",
        "127.0.0.1",
        public_service_name,
        f"{public_service_name}.{namespace}",
        f"{public_service_name}.{namespace}.svc.{cluster_domain}",
        f"*.{discovery_service_name}",
        f"*.{discovery_service_name}.{namespace}",
        f"*.{discovery_service_name}.{namespace}.svc.{cluster_domain}",
    )


def load_private_key(pem: bytes) -> rsa.RSAPrivateKey:
    """Parse an unencrypted PEM private key (PKCS#1 or PKCS#8).

    Raises:
        ValueError: If the data is not an RSA private key
    """
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (TypeError, UnsupportedAlgorithm) as e:
        raise ValueError(f"unable to load private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"expected an RSA private key, got {type(key).__name__}")
    return key


def load_certificate(pem: bytes) -> x509.Certificate:
    """Parse the first certificate of a PEM bundle.

    Raises:
        ValueError: If no certificate can be parsed
    """
    return x509.load_pem_x509_certificate(pem)


def _san_entry(host: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(host))
    except ValueError:
        return x509.DNSName(host)


class CertificateIssuer:
    """Issues CA, node and client certificates."""

    PUBLIC_EXPONENT = 65537

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        """Initialize the issuer.

        Args:
            clock: Returns the current UTC time; defaults to the system clock
        """
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        # x509 validity has second granularity
        return self._clock().astimezone(timezone.utc).replace(microsecond=0)

    def generate_private_key(self, key_size: int) -> rsa.RSAPrivateKey:
        """Generate an RSA private key.

        Raises:
            KeyGenerationFailed: If the key cannot be generated
        """
        try:
            return rsa.generate_private_key(
                public_exponent=self.PUBLIC_EXPONENT,
                key_size=key_size,
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyGenerationFailed(f"failed to generate {key_size}-bit RSA key: {e}") from e

    @staticmethod
    def key_to_pem(key: rsa.RSAPrivateKey, pkcs8: bool = False) -> bytes:
        """Serialize a private key as PKCS#1 PEM, or PKCS#8 PEM if requested."""
        return key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.PKCS8 if pkcs8 else PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=NoEncryption(),
        )

    @staticmethod
    def cert_to_pem(cert: x509.Certificate) -> bytes:
        """Serialize a certificate as PEM."""
        return cert.public_bytes(Encoding.PEM)

    def _sign(
        self,
        builder: x509.CertificateBuilder,
        signing_key: rsa.RSAPrivateKey,
        what: str,
    ) -> x509.Certificate:
        try:
            return builder.sign(signing_key, hashes.SHA256())
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise SigningFailed(f"failed to sign {what} certificate: {e}") from e

    @staticmethod
    def _validity_end(now: datetime, validity: timedelta, what: str) -> datetime:
        try:
            return now + validity
        except OverflowError as e:
            raise SigningFailed(f"{what} certificate lifetime of {validity} is out of range: {e}") from e

    @staticmethod
    def _check_lifetime_against_ca(
        not_after: datetime,
        ca_cert: x509.Certificate,
        now: datetime,
        what: str,
    ) -> None:
        """Refuse to issue certificates that outlive their CA."""
        ca_not_after = ca_cert.not_valid_after_utc
        if not_after <= ca_not_after:
            return
        ca_hours = (ca_not_after - now).total_seconds() / 3600
        cert_hours = (not_after - now).total_seconds() / 3600
        raise SigningFailed(
            f"CA lifetime is {ca_hours:.0f}h, shorter than the requested {what} "
            f"certificate lifetime of {cert_hours:.0f}h. Renew the CA certificate, "
            f"or shorten the {what} certificate duration."
        )

    def _bundle(
        self,
        key: rsa.RSAPrivateKey,
        cert: x509.Certificate,
        validity: timedelta,
        ca_cert: Optional[x509.Certificate],
        pkcs8: bool = False,
    ) -> CredentialBundle:
        return CredentialBundle(
            private_key=self.key_to_pem(key, pkcs8=pkcs8),
            certificate=self.cert_to_pem(cert),
            ca_certificate=self.cert_to_pem(ca_cert) if ca_cert is not None else None,
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            duration=validity,
            key=key,
            cert=cert,
        )

    def issue_ca(
        self,
        key_size: int,
        validity: timedelta,
        existing_key: Optional[rsa.RSAPrivateKey] = None,
    ) -> CredentialBundle:
        """Generate a self-signed CA certificate.

        Args:
            key_size: RSA key size for a new key
            validity: Certificate lifetime
            existing_key: Re-sign with this key instead of generating one

        Returns:
            CA bundle (ca_certificate is None)
        """
        key = existing_key or self.generate_private_key(key_size)

        subject = issuer = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, CA_COMMON_NAME),
        ])

        now = self._now()
        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(self._validity_end(now, validity, "CA"))
            .add_extension(
                x509.BasicConstraints(ca=True, path_length=1),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_cert_sign=True,
                    crl_sign=True,
                    key_encipherment=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                critical=False,
            )
        )

        cert = self._sign(builder, key, "CA")
        return self._bundle(key, cert, validity, ca_cert=None)

    def _leaf_builder(
        self,
        ca_cert: x509.Certificate,
        public_key: rsa.RSAPublicKey,
        common_name: str,
        validity: timedelta,
        usages: Sequence[x509.ObjectIdentifier],
        what: str,
    ) -> x509.CertificateBuilder:
        now = self._now()
        not_after = self._validity_end(now, validity, what)
        self._check_lifetime_against_ca(not_after, ca_cert, now, what)

        subject = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ])

        return (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(ca_cert.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(not_after)
            .add_extension(
                x509.BasicConstraints(ca=False, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_encipherment=True,
                    key_cert_sign=False,
                    crl_sign=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage(list(usages)),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_cert.public_key()),
                critical=False,
            )
        )

    def issue_node(
        self,
        ca_key: rsa.RSAPrivateKey,
        ca_cert: x509.Certificate,
        hosts: Sequence[str],
        key_size: int,
        validity: timedelta,
    ) -> CredentialBundle:
        """Generate a node certificate signed by the CA.

        Nodes talk to each other over mTLS, so the certificate carries both
        server and client auth.

        Args:
            ca_key: CA private key
            ca_cert: CA certificate
            hosts: Subject alternative names (DNS names or IP literals)
            key_size: RSA key size
            validity: Certificate lifetime

        Returns:
            Node bundle
        """
        if not hosts:
            raise SigningFailed("node certificate requires at least one host")

        key = self.generate_private_key(key_size)

        builder = self._leaf_builder(
            ca_cert,
            key.public_key(),
            NODE_COMMON_NAME,
            validity,
            [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH],
            "node",
        ).add_extension(
            x509.SubjectAlternativeName([_san_entry(h) for h in hosts]),
            critical=False,
        )

        cert = self._sign(builder, ca_key, "node")
        return self._bundle(key, cert, validity, ca_cert=ca_cert)

    def issue_client(
        self,
        ca_key: rsa.RSAPrivateKey,
        ca_cert: x509.Certificate,
        principal: str = DEFAULT_PRINCIPAL,
        key_size: int = 2048,
        validity: timedelta = timedelta(hours=672),
        pkcs8: bool = False,
    ) -> CredentialBundle:
        """Generate a client certificate signed by the CA.

        Args:
            ca_key: CA private key
            ca_cert: CA certificate
            principal: SQL user name embedded as the common name
            key_size: RSA key size
            validity: Certificate lifetime
            pkcs8: Encode the private key as PKCS#8 instead of PKCS#1

        Returns:
            Client bundle
        """
        if not principal:
            raise SigningFailed("client certificate requires a principal")

        key = self.generate_private_key(key_size)

        builder = self._leaf_builder(
            ca_cert,
            key.public_key(),
            principal,
            validity,
            [ExtendedKeyUsageOID.CLIENT_AUTH],
            "client",
        )

        cert = self._sign(builder, ca_key, "client")
        return self._bundle(key, cert, validity, ca_cert=ca_cert, pkcs8=pkcs8)
