"""
crdb-self-signer command line entry point.

    crdb-self-signer generate --namespace crdb --config self-signer.yaml
    crdb-self-signer status --namespace crdb --public-service crdb-public --discovery-service crdb
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from . import __version__
from .config import (
    CONFIG_PATH_ENV,
    CertConfig,
    SecretRole,
    SignerConfig,
    format_duration,
    has_env_config,
    load_config,
)
from .context import RunContext
from .error_handling import CertGenError
from .generator import CertGenerator
from .security.secret_store import FileSecretStore

logger = logging.getLogger("crdb-self-signer")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="crdb-self-signer",
        description="Provision and rotate the CA, node and client certificates of a CockroachDB cluster",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--namespace", required=True, help="Namespace the cluster is deployed into")
    common.add_argument("--config", type=Path, help="YAML configuration file")
    common.add_argument(
        "--store-path",
        type=Path,
        help="Directory of the encrypted secret store (default: $XDG_DATA_HOME/crdb-self-signer/secrets)",
    )
    common.add_argument("--key-file", type=Path, help="Secret store encryption key file")
    common.add_argument("--public-service", help="Public service name")
    common.add_argument("--discovery-service", help="Discovery service name; prefix of every secret name")
    common.add_argument("--cluster-domain", help="Cluster DNS domain (default: cluster.local)")
    common.add_argument("--ca-secret", help="Use this user-managed CA secret instead of generating a CA")
    for role in SecretRole:
        common.add_argument(f"--{role.key}-duration", help=f"{role.value} certificate duration, e.g. 8760h")
        common.add_argument(f"--{role.key}-expiry", help=f"{role.value} certificate renewal window, e.g. 168h")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser("generate", parents=[common], help="Generate or reuse all certificates")
    generate.add_argument("--key-size", type=int, help="RSA key size (default: 2048)")
    generate.add_argument(
        "--allow-ca-key-reuse",
        action="store_true",
        default=None,
        help="Keep the existing CA key when the CA certificate is regenerated",
    )
    generate.add_argument(
        "--overwrite-files",
        action="store_true",
        default=None,
        help="Overwrite existing files in the working directory",
    )
    generate.add_argument(
        "--pkcs8-client-key",
        action="store_true",
        default=None,
        help="Store the client key in PKCS#8 format",
    )
    generate.add_argument("--client-user", help="Principal of the client certificate (default: root)")
    generate.add_argument("--work-dir", type=Path, help="Keep working files in this directory")
    generate.add_argument("--timeout", type=float, help="Abort the run after this many seconds")

    subparsers.add_parser("status", parents=[common], help="Show whether each stored certificate is ready")

    return parser


def config_from_args(args: argparse.Namespace) -> SignerConfig:
    """Merge the config file (or environment) with command line overrides."""
    if args.config or os.environ.get(CONFIG_PATH_ENV) or has_env_config():
        config = load_config(args.config)
    else:
        config = SignerConfig()

    overrides = {
        "public_service_name": args.public_service,
        "discovery_service_name": args.discovery_service,
        "cluster_domain": args.cluster_domain,
        "ca_secret": args.ca_secret,
        "key_size": getattr(args, "key_size", None),
        "allow_ca_key_reuse": getattr(args, "allow_ca_key_reuse", None),
        "overwrite_files": getattr(args, "overwrite_files", None),
        "pkcs8_client_key": getattr(args, "pkcs8_client_key", None),
        "client_user": getattr(args, "client_user", None),
    }

    for role in SecretRole:
        duration = getattr(args, f"{role.key}_duration")
        window = getattr(args, f"{role.key}_expiry")
        if duration is None and window is None:
            continue
        current = config.cert_config(role)
        merged = CertConfig.parse(
            duration or current.duration_string(),
            window or format_duration(current.expiry_window),
        )
        overrides[role.key] = merged

    return config.with_overrides(**overrides)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point.

    Returns:
        Exit code (0 for success, 1 for failure, 130 if interrupted)
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = config_from_args(args)
        store = FileSecretStore(store_path=args.store_path, key_file=args.key_file)
        generator = CertGenerator(store, config, work_dir=getattr(args, "work_dir", None))

        if args.command == "status":
            states = generator.status(args.namespace)
            print(json.dumps(
                {role.value: {"state": r.state.value, "reason": r.reason} for role, r in states.items()},
                indent=2,
            ))
            return 0

        ctx = RunContext(timeout=args.timeout)
        logger.info(f"Starting crdb-self-signer v{__version__} for namespace [{args.namespace}]")
        report = generator.run(args.namespace, ctx)
        print(json.dumps(report.to_dict(), indent=2))
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down...")
        return 130
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
    except (CertGenError, ValueError) as e:
        logger.error(f"Certificate generation failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
