"""
crdb-self-signer - certificate lifecycle management for CockroachDB clusters.

Provisions and rotates the CA, node and client certificates that a secure
cluster needs, and keeps them in a secret store between invocations so that
repeated runs reuse healthy material instead of regenerating it.
"""

__version__ = "0.1.0"
