"""
Certificate generation orchestrator.

Runs the CA, node and client steps for one cluster, strictly in that order:
the node and client certificates are signed with the CA the first step
produced or loaded. Each step reuses its stored secret when it is ready and
otherwise issues and saves a new bundle. The first failure aborts the run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from .authority import CA_CERT_FILE, CA_KEY_FILE, CAManager, CAMaterial
from .config import SecretRole, SignerConfig
from .context import RunContext
from .error_handling import CertGenError, SigningFailed, validate_namespace
from .persistence import load_secret, persist_bundle
from .readiness import (
    ANNOTATION_NOT_AFTER,
    Readiness,
    build_annotations,
    evaluate,
    evaluate_structure,
    parse_timestamp,
)
from .security.certificate_issuer import (
    CertificateIssuer,
    CredentialBundle,
    load_certificate,
    load_private_key,
    node_hosts,
)
from .security.secret_store import (
    CA_CERT_KEY,
    SECRET_TYPE_TLS,
    TLS_CERT_KEY,
    TLS_PRIVATE_KEY,
    SecretStore,
    StoredSecret,
)
from .security.work_area import WorkArea

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTION_REUSED = "reused"
ACTION_GENERATED = "generated"
ACTION_ADOPTED = "adopted"


@dataclass
class StepResult:
    """What a single step did.

    Attributes:
        role: Certificate role
        secret_name: Secret the role's bundle lives in
        action: reused, generated or adopted
        reason: Why the secret was regenerated (empty when reused)
        not_after: Expiry recorded for the stored bundle, if known
    """
    role: SecretRole
    secret_name: str
    action: str
    reason: str = ""
    not_after: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "secret_name": self.secret_name,
            "action": self.action,
            "reason": self.reason,
            "not_after": self.not_after.isoformat() if self.not_after else None,
        }


@dataclass
class RunReport:
    """Summary of a generation run."""
    namespace: str
    steps: list[StepResult] = field(default_factory=list)

    def step(self, role: SecretRole) -> Optional[StepResult]:
        for result in self.steps:
            if result.role is role:
                return result
        return None

    @property
    def generated_roles(self) -> list[SecretRole]:
        return [s.role for s in self.steps if s.action == ACTION_GENERATED]

    @property
    def changed(self) -> bool:
        return bool(self.generated_roles)

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "steps": [s.to_dict() for s in self.steps],
        }


class CertGenerator:
    """Provisions the CA, node and client certificates of a cluster."""

    def __init__(
        self,
        store: SecretStore,
        config: SignerConfig,
        issuer: Optional[CertificateIssuer] = None,
        work_dir: Optional[Path] = None,
    ):
        """Initialize the generator.

        Args:
            store: Secret store holding the bundles
            config: Immutable run configuration
            issuer: Certificate issuer (a default one is created if omitted)
            work_dir: Keep working files in this directory instead of a
                temporary one that is removed after the run
        """
        config.validate()
        self.store = store
        self.config = config
        self.issuer = issuer or CertificateIssuer()
        self.work_dir = work_dir

    def run(self, namespace: str, ctx: Optional[RunContext] = None) -> RunReport:
        """Generate or reuse every certificate of the cluster.

        Args:
            namespace: Namespace the cluster and its secrets live in
            ctx: Cancellation context

        Returns:
            Per-role report of what was reused or generated

        Raises:
            CertGenError: The first failure, with its stage attached
        """
        validate_namespace(namespace)
        ctx = ctx or RunContext()
        report = RunReport(namespace=namespace)

        ctx.check("creating the working area")
        with WorkArea(self.work_dir, overwrite_files=self.config.overwrite_files) as work:
            ca = self._stage(SecretRole.CA, self._generate_ca, namespace, work, ctx, report)
            self._stage(SecretRole.NODE, self._generate_node_cert, namespace, work, ctx, report, ca)
            self._stage(SecretRole.CLIENT, self._generate_client_cert, namespace, work, ctx, report, ca)

        logger.info(
            f"Certificates for namespace [{namespace}] are ready "
            f"(generated: {', '.join(r.value for r in report.generated_roles) or 'none'})"
        )
        return report

    def status(self, namespace: str, ctx: Optional[RunContext] = None) -> dict[SecretRole, Readiness]:
        """Evaluate every role's stored secret without changing anything."""
        validate_namespace(namespace)
        ctx = ctx or RunContext()
        states = {}
        for role in SecretRole:
            if role is SecretRole.CA and self.config.ca_secret:
                # User-managed CAs are used as long as their material is complete
                secret = load_secret(self.store, ctx, self.config.ca_secret, namespace)
                states[role] = evaluate_structure(secret, role)
                continue
            secret = load_secret(self.store, ctx, self.config.secret_name(role), namespace)
            states[role] = evaluate(secret, self.config.cert_config(role), role)
        return states

    def _stage(self, role: SecretRole, step: Callable[..., T], *args: Any) -> T:
        try:
            return step(*args)
        except CertGenError as e:
            e.with_stage(role.value)
            logger.error(f"Error generating {role.value} certificate: {e.message}")
            raise

    def _generate_ca(
        self,
        namespace: str,
        work: WorkArea,
        ctx: RunContext,
        report: RunReport,
    ) -> CAMaterial:
        manager = CAManager(self.store, self.issuer, self.config, work, ctx)
        ca = manager.ensure_ca(namespace, self.config.ca_secret_name, self.config.ca_secret)

        action = {
            "generated": ACTION_GENERATED,
            "adopted": ACTION_ADOPTED,
        }.get(ca.source, ACTION_REUSED)
        report.steps.append(StepResult(
            role=SecretRole.CA,
            secret_name=ca.secret_name,
            action=action,
            not_after=ca.certificate.not_valid_after_utc,
        ))
        return ca

    def _signing_ca(self, work: WorkArea) -> tuple:
        """Load the CA key and certificate written by the CA step."""
        try:
            return (
                load_private_key(work.read(CA_KEY_FILE)),
                load_certificate(work.read(CA_CERT_FILE)),
            )
        except ValueError as e:
            raise SigningFailed(f"CA material in the working area is unusable: {e}") from e

    def _generate_leaf(
        self,
        role: SecretRole,
        namespace: str,
        work: WorkArea,
        ctx: RunContext,
        report: RunReport,
        ca: CAMaterial,
        issue: Callable[[Any, Any], CredentialBundle],
        cert_file: str,
        key_file: str,
    ) -> None:
        secret_name = self.config.secret_name(role)
        cert_config = self.config.cert_config(role)

        secret = load_secret(self.store, ctx, secret_name, namespace)
        readiness = evaluate(secret, cert_config, role)
        if readiness.ready:
            logger.info(
                f"{role.value} secret [{secret_name}] is found in ready state, "
                f"skipping {role.value} cert generation"
            )
            report.steps.append(StepResult(
                role=role,
                secret_name=secret_name,
                action=ACTION_REUSED,
                not_after=parse_timestamp(secret.annotations.get(ANNOTATION_NOT_AFTER)),
            ))
            return

        logger.info(f"Generating {role.value.lower()} certificate ({readiness.reason})")

        ca_key, ca_cert = self._signing_ca(work)
        ctx.check(f"generating the {role.value.lower()} key and certificate")
        bundle = issue(ca_key, ca_cert)
        logger.debug(
            f"{role.value} certificate valid from {bundle.not_before.isoformat()} "
            f"to {bundle.not_after.isoformat()}"
        )

        result = persist_bundle(
            self.store,
            ctx,
            role,
            cert_config,
            secret_name,
            namespace,
            SECRET_TYPE_TLS,
            {
                TLS_CERT_KEY: bundle.certificate,
                TLS_PRIVATE_KEY: bundle.private_key,
                CA_CERT_KEY: ca.cert_pem,
            },
            build_annotations(bundle.not_before, bundle.not_after, cert_config),
            secret.resource_version if secret is not None else None,
        )

        self._write_leaf_files(work, ctx, result.secret, cert_file, key_file)

        if result.adopted:
            action = ACTION_ADOPTED
        else:
            action = ACTION_GENERATED
            logger.info(
                f"Generated and saved {role.value.lower()} key and certificate in secret [{secret_name}]"
            )

        report.steps.append(StepResult(
            role=role,
            secret_name=secret_name,
            action=action,
            reason=readiness.reason,
            not_after=parse_timestamp(result.secret.annotations.get(ANNOTATION_NOT_AFTER)),
        ))

    @staticmethod
    def _write_leaf_files(
        work: WorkArea,
        ctx: RunContext,
        secret: StoredSecret,
        cert_file: str,
        key_file: str,
    ) -> None:
        ctx.check("writing certificate files to the working area")
        work.write(cert_file, secret.tls_cert)
        work.write(key_file, secret.tls_key)

    def _generate_node_cert(
        self,
        namespace: str,
        work: WorkArea,
        ctx: RunContext,
        report: RunReport,
        ca: CAMaterial,
    ) -> None:
        hosts = node_hosts(
            self.config.public_service_name,
            self.config.discovery_service_name,
            namespace,
            self.config.cluster_domain,
        )

        def issue(ca_key, ca_cert) -> CredentialBundle:
            return self.issuer.issue_node(
                ca_key,
                ca_cert,
                hosts,
                key_size=self.config.key_size,
                validity=self.config.node.duration,
            )

        self._generate_leaf(
            SecretRole.NODE, namespace, work, ctx, report, ca, issue,
            "node.crt", "node.key",
        )

    def _generate_client_cert(
        self,
        namespace: str,
        work: WorkArea,
        ctx: RunContext,
        report: RunReport,
        ca: CAMaterial,
    ) -> None:
        user = self.config.client_user

        def issue(ca_key, ca_cert) -> CredentialBundle:
            return self.issuer.issue_client(
                ca_key,
                ca_cert,
                principal=user,
                key_size=self.config.key_size,
                validity=self.config.client.duration,
                pkcs8=self.config.pkcs8_client_key,
            )

        key_file = f"client.{user}.key.pk8" if self.config.pkcs8_client_key else f"client.{user}.key"
        self._generate_leaf(
            SecretRole.CLIENT, namespace, work, ctx, report, ca, issue,
            f"client.{user}.crt", key_file,
        )
