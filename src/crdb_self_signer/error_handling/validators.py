"""
Input validation functions for the certificate generator.

Provides validation for Kubernetes-style names, service names used to build
the node host set, and RSA key sizes.
"""

import re

# DNS-1123 label and subdomain rules, as enforced for namespaces and secrets
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")

MIN_KEY_SIZE = 2048
MAX_KEY_SIZE = 8192


def validate_namespace(namespace: str) -> str:
    """Validate a namespace name.

    Args:
        namespace: The namespace to validate

    Returns:
        The validated namespace

    Raises:
        ValueError: If the namespace is invalid
    """
    if not namespace:
        raise ValueError(
            "Namespace cannot be empty. "
            "Hint: Pass the namespace the cluster is deployed into."
        )

    if len(namespace) > 63 or not _DNS_LABEL.match(namespace):
        raise ValueError(
            f"Invalid namespace: '{namespace}'. "
            "Must be at most 63 lowercase alphanumeric characters or '-', "
            "starting and ending with an alphanumeric character."
        )

    return namespace


def validate_dns_label(value: str, field_name: str = "name") -> str:
    """Validate a single DNS label such as a service name.

    Args:
        value: The label to validate
        field_name: Name of the setting, used in the error message

    Returns:
        The validated label

    Raises:
        ValueError: If the label is invalid
    """
    if not value:
        raise ValueError(
            f"{field_name} cannot be empty. "
            "Hint: Service names are required to derive the node certificate hosts."
        )

    if len(value) > 63 or not _DNS_LABEL.match(value):
        raise ValueError(
            f"Invalid {field_name}: '{value}'. "
            "Must be a DNS label (lowercase alphanumeric or '-', at most 63 characters)."
        )

    return value


def validate_dns_subdomain(value: str, field_name: str = "domain") -> str:
    """Validate a dotted DNS name such as the cluster domain.

    Args:
        value: The name to validate
        field_name: Name of the setting, used in the error message

    Returns:
        The validated name

    Raises:
        ValueError: If the name is invalid
    """
    if not value:
        raise ValueError(f"{field_name} cannot be empty.")

    if len(value) > 253 or not _DNS_SUBDOMAIN.match(value):
        raise ValueError(
            f"Invalid {field_name}: '{value}'. "
            "Must be a DNS name of dot-separated labels (lowercase alphanumeric or '-', "
            "at most 253 characters), e.g. 'cluster.local'."
        )

    return value


def validate_secret_name(name: str) -> str:
    """Validate a secret name.

    Args:
        name: The secret name to validate

    Returns:
        The validated secret name

    Raises:
        ValueError: If the secret name is invalid
    """
    if not name:
        raise ValueError("Secret name cannot be empty.")

    if len(name) > 253 or not _DNS_SUBDOMAIN.match(name):
        raise ValueError(
            f"Invalid secret name: '{name}'. "
            "Must be a DNS subdomain (lowercase alphanumeric, '-' or '.', "
            "at most 253 characters)."
        )

    return name


def validate_key_size(key_size: int) -> int:
    """Validate an RSA key size.

    Args:
        key_size: Key size in bits

    Returns:
        The validated key size

    Raises:
        ValueError: If the key size is out of range
    """
    if not isinstance(key_size, int) or isinstance(key_size, bool):
        raise ValueError(f"Key size must be an integer, got {key_size!r}.")

    if key_size < MIN_KEY_SIZE or key_size > MAX_KEY_SIZE:
        raise ValueError(
            f"Key size must be between {MIN_KEY_SIZE} and {MAX_KEY_SIZE} bits, got {key_size}. "
            "Hint: 2048 is the default and is accepted by every CockroachDB release."
        )

    if key_size % 256:
        raise ValueError(f"Key size must be a multiple of 256 bits, got {key_size}.")

    return key_size
