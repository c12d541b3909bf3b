"""
Readiness checks for stored certificate bundles.

A stored bundle is reused only if it carries the key material its role needs
and its annotations show that it was issued with the currently configured
duration and is not yet inside its renewal window. Anything else, including
missing or unparsable annotations, sends the role down the generation path.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .config import CertConfig, SecretRole, parse_duration
from .error_handling import ConfigParseError
from .security.secret_store import (
    StoredSecret,
    CA_CERT_KEY,
    CA_PRIVATE_KEY,
    TLS_CERT_KEY,
    TLS_PRIVATE_KEY,
)

ANNOTATION_NOT_BEFORE = "not-before"
ANNOTATION_NOT_AFTER = "not-after"
ANNOTATION_DURATION = "duration"

_REQUIRED_KEYS = {
    SecretRole.CA: (CA_PRIVATE_KEY, CA_CERT_KEY),
    SecretRole.NODE: (TLS_PRIVATE_KEY, TLS_CERT_KEY, CA_CERT_KEY),
    SecretRole.CLIENT: (TLS_PRIVATE_KEY, TLS_CERT_KEY, CA_CERT_KEY),
}


class SecretState(Enum):
    """Where a role's stored secret stands."""
    ABSENT = "absent"
    PRESENT_READY = "ready"
    PRESENT_STALE = "stale"


@dataclass(frozen=True)
class Readiness:
    """Outcome of a readiness evaluation.

    Attributes:
        state: Absent, present and reusable, or present but due for renewal
        reason: Why the secret is not ready (empty when ready)
    """
    state: SecretState
    reason: str = ""

    @property
    def ready(self) -> bool:
        return self.state is SecretState.PRESENT_READY

    def __bool__(self) -> bool:
        return self.ready


def format_timestamp(value: datetime) -> str:
    """Format a timestamp as RFC 3339 in UTC with second granularity."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp, returning None if it is missing or invalid."""
    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(timezone.utc)


def build_annotations(not_before: datetime, not_after: datetime, config: CertConfig) -> dict[str, str]:
    """Annotations recorded next to a freshly issued bundle."""
    return {
        ANNOTATION_NOT_BEFORE: format_timestamp(not_before),
        ANNOTATION_NOT_AFTER: format_timestamp(not_after),
        ANNOTATION_DURATION: config.duration_string(),
    }


def has_required_material(secret: StoredSecret, role: SecretRole) -> bool:
    """Check that every data entry the role needs is present and non-empty."""
    return all(secret.get(key) for key in _REQUIRED_KEYS[role])


def check_annotations(
    annotations: dict[str, str],
    config: CertConfig,
    now: datetime,
) -> Optional[str]:
    """Check annotation consistency.

    Returns:
        None if the annotations allow reuse, otherwise the reason they don't
    """
    recorded = annotations.get(ANNOTATION_DURATION)
    if not recorded:
        return "missing duration annotation"
    try:
        recorded_duration = parse_duration(recorded)
    except ConfigParseError:
        return f"unparsable duration annotation {recorded!r}"
    if recorded_duration != config.duration:
        return (
            f"issued for {recorded} but configured duration is {config.duration_string()}"
        )

    not_after = parse_timestamp(annotations.get(ANNOTATION_NOT_AFTER))
    if not_after is None:
        return "missing or unparsable not-after annotation"

    renew_at = not_after - config.expiry_window
    if not now < renew_at:
        return f"inside renewal window (expires {format_timestamp(not_after)})"

    return None


def evaluate_structure(secret: Optional[StoredSecret], role: SecretRole) -> Readiness:
    """Decide readiness from the key material alone.

    Used for user-managed secrets, which carry no lifetime annotations.
    """
    if secret is None:
        return Readiness(SecretState.ABSENT, "secret does not exist")

    missing = [k for k in _REQUIRED_KEYS[role] if not secret.get(k)]
    if missing:
        return Readiness(SecretState.PRESENT_STALE, f"missing {', '.join(missing)}")

    return Readiness(SecretState.PRESENT_READY)


def evaluate(
    secret: Optional[StoredSecret],
    config: CertConfig,
    role: SecretRole,
    now: Optional[datetime] = None,
) -> Readiness:
    """Decide whether a stored secret can be reused.

    Args:
        secret: The stored secret, or None if it does not exist
        config: Validity settings for the role
        role: Which certificate role the secret holds
        now: Evaluation time; defaults to the current UTC time

    Returns:
        The readiness outcome
    """
    structural = evaluate_structure(secret, role)
    if not structural.ready:
        return structural

    now = now or datetime.now(timezone.utc)
    reason = check_annotations(secret.annotations, config, now)
    if reason:
        return Readiness(SecretState.PRESENT_STALE, reason)

    return Readiness(SecretState.PRESENT_READY)


def is_ready(
    secret: Optional[StoredSecret],
    config: CertConfig,
    role: SecretRole,
    now: Optional[datetime] = None,
) -> bool:
    """Boolean form of evaluate()."""
    return evaluate(secret, config, role, now).ready
