"""Shared pytest fixtures for crdb-self-signer tests.

All tests are unit tests: secrets live in memory or in a temporary
directory, and nothing touches a real cluster.
"""

import os
from pathlib import Path
from typing import Generator

import pytest

from crdb_self_signer.config import CertConfig, SignerConfig
from crdb_self_signer.security import (
    CertificateIssuer,
    FileSecretStore,
    InMemorySecretStore,
)

NAMESPACE = "ns1"
PUBLIC_SERVICE = "crdb-public"
DISCOVERY_SERVICE = "crdb"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "slow: Long-running tests")


@pytest.fixture
def namespace() -> str:
    return NAMESPACE


@pytest.fixture
def signer_config() -> SignerConfig:
    """Configuration for a cluster named crdb in namespace ns1."""
    return SignerConfig(
        public_service_name=PUBLIC_SERVICE,
        discovery_service_name=DISCOVERY_SERVICE,
        cluster_domain="cluster.local",
        ca=CertConfig.parse("43800h", "648h"),
        node=CertConfig.parse("8760h", "168h"),
        client=CertConfig.parse("672h", "48h"),
    )


@pytest.fixture
def memory_store() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture
def issuer() -> CertificateIssuer:
    return CertificateIssuer()


@pytest.fixture
def temp_store_dir(tmp_path: Path) -> Generator[Path, None, None]:
    """Provide an isolated directory for the file secret store.

    Yields:
        Path to a temporary store directory
    """
    store_dir = tmp_path / "secrets"
    store_dir.mkdir()
    yield store_dir


@pytest.fixture
def file_store(temp_store_dir: Path) -> FileSecretStore:
    return FileSecretStore(
        store_path=temp_store_dir,
        key_file=temp_store_dir.parent / "store.key",
    )


@pytest.fixture
def temp_work_dir(tmp_path: Path) -> Generator[Path, None, None]:
    """Provide an isolated working directory for certificate files.

    Yields:
        Path to a temporary working directory
    """
    work_dir = tmp_path / "work"
    yield work_dir


@pytest.fixture
def clean_env(monkeypatch):
    """Provide a clean environment without self-signer config vars."""
    for var in list(os.environ):
        if var.startswith("SELF_SIGNER_"):
            monkeypatch.delenv(var, raising=False)


# Autouse fixture for test isolation
@pytest.fixture(autouse=True)
def isolate_test_artifacts(tmp_path: Path, monkeypatch) -> Generator[None, None, None]:
    """Ensure tests don't affect the real system.

    Sets environment variables to redirect all storage to temp directories.
    """
    test_data_home = tmp_path / "data"
    test_data_home.mkdir()
    monkeypatch.setenv("XDG_DATA_HOME", str(test_data_home))

    if os.name == "nt":
        monkeypatch.setenv("LOCALAPPDATA", str(test_data_home))

    yield
