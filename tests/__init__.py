"""Tests for crdb-self-signer.

Test Structure:
    tests/
    ├── conftest.py                  # Shared pytest fixtures
    └── unit/                        # Unit tests (no external deps)
        ├── test_config.py
        ├── test_certificate_issuer.py
        ├── test_secret_store.py
        ├── test_readiness.py
        ├── test_authority.py
        ├── test_generator.py
        ├── test_work_area.py
        ├── test_error_handling.py
        └── test_cli.py

Usage:
    # Run all tests
    pytest

    # Run only unit tests
    pytest -m unit

    # Run with verbose output
    pytest -v
"""
