"""
Load and save helpers shared by the generation steps.

Saving uses the store's optimistic concurrency: a step writes against the
version it loaded, and if another writer got there first the secret is
reloaded once and re-evaluated. A ready secret from the other writer is
adopted as-is; otherwise the new bundle is written against the reloaded
version.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import CertConfig, SecretRole
from .context import RunContext
from .error_handling import PersistenceFailed, StoreAccessError, StoreConflict
from .readiness import evaluate
from .security.secret_store import SecretStore, StoredSecret

logger = logging.getLogger(__name__)


@dataclass
class PersistResult:
    """Outcome of saving a bundle.

    Attributes:
        secret: The secret now held by the store
        adopted: True if a concurrent writer's ready secret was kept
            instead of the bundle this run generated
    """
    secret: StoredSecret
    adopted: bool = False


def load_secret(
    store: SecretStore,
    ctx: RunContext,
    name: str,
    namespace: str,
) -> Optional[StoredSecret]:
    """Load a secret, returning None when it does not exist.

    Raises:
        RunCancelled: If the run was cancelled
        StoreAccessError: If the store cannot be read
    """
    ctx.check(f"loading secret {namespace}/{name}")
    return store.get_or_none(name, namespace)


def _write(
    store: SecretStore,
    ctx: RunContext,
    name: str,
    namespace: str,
    secret_type: str,
    data: dict[str, bytes],
    annotations: dict[str, str],
    expected_version: Optional[int],
) -> StoredSecret:
    ctx.check(f"saving secret {namespace}/{name}")
    try:
        return store.create_or_update(
            name,
            namespace,
            secret_type,
            data,
            annotations,
            expected_version=expected_version,
        )
    except StoreAccessError as e:
        raise PersistenceFailed(f"failed to save secret {namespace}/{name}: {e.message}") from e


def persist_bundle(
    store: SecretStore,
    ctx: RunContext,
    role: SecretRole,
    config: CertConfig,
    name: str,
    namespace: str,
    secret_type: str,
    data: dict[str, bytes],
    annotations: dict[str, str],
    expected_version: Optional[int],
) -> PersistResult:
    """Save a freshly generated bundle.

    Args:
        store: Secret store
        ctx: Run context
        role: Role of the bundle, used to re-evaluate after a conflict
        config: Validity settings for the role
        name: Secret name
        namespace: Namespace
        secret_type: Opaque or kubernetes.io/tls
        data: Key material
        annotations: Lifetime annotations
        expected_version: Version loaded at the start of the step, or None
            if the secret was absent

    Returns:
        The stored (or adopted) secret

    Raises:
        PersistenceFailed: If the bundle could not be saved
    """
    try:
        return PersistResult(
            _write(store, ctx, name, namespace, secret_type, data, annotations, expected_version)
        )
    except StoreConflict as e:
        logger.warning(f"Secret [{name}] changed while it was being regenerated ({e.message}), reloading")

    current = load_secret(store, ctx, name, namespace)
    readiness = evaluate(current, config, role)
    if readiness.ready:
        logger.info(f"Secret [{name}] was provisioned concurrently and is ready, keeping it")
        return PersistResult(current, adopted=True)

    try:
        stored = _write(
            store,
            ctx,
            name,
            namespace,
            secret_type,
            data,
            annotations,
            current.resource_version if current else None,
        )
    except StoreConflict as e:
        raise PersistenceFailed(
            f"secret {namespace}/{name} keeps changing concurrently, giving up: {e.message}"
        ) from e

    return PersistResult(stored)
