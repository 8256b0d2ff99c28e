#!/usr/bin/env python3
"""
Spend Permission Gateway - Command Line Interface

Usage:
    spg keygen --out <seed-file>            Generate an Ed25519 key (account, spender or audit signer)
    spg hash <permission.json>              Print the permission hash for this network/engine
    spg validate <path>                     Validate a permission, spend request or policy config
    spg sign-approval <permission.json>     Sign a permission hash with an account key
    spg cycle <permission.json>             Show the current cycle usage from the local store
    spg verify-audit <audit.jsonl>          Verify a signed audit mirror
    spg serve                               Run the HTTP gateway
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List

from spend_gateway.config import GatewayConfig
from spend_gateway.crypto import generate_key_file, load_signing_key_from_file
from spend_gateway.errors import SpendError
from spend_gateway.permissions import Permission, PermissionDomain, permission_hash


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    logging.getLogger("spend_gateway").setLevel(level)


def _config(args) -> GatewayConfig:
    config = GatewayConfig.from_env()
    if args.db:
        config.db_path = args.db
    if args.network_id is not None:
        config.network_id = args.network_id
    if args.engine_id:
        config.engine_id = args.engine_id
    return config


def _load_permission(path: str) -> Permission:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise SystemExit(f"ERROR: cannot read permission file '{path}': {e}")
    if isinstance(data, dict) and isinstance(data.get("permission"), dict):
        data = data["permission"]
    if not isinstance(data, dict):
        raise SystemExit(f"ERROR: permission file '{path}' must contain a JSON object")
    return Permission.from_dict(data)


def cmd_keygen(args):
    """Generate an Ed25519 seed file (0600) and print its identity."""
    out = Path(args.out)
    if out.exists() and not args.force:
        raise SystemExit(f"ERROR: {out} already exists (use --force to overwrite)")
    key = generate_key_file(str(out), key_id=args.key_id)
    print(json.dumps({"key_id": key.key_id, "identity": key.public_key_hex, "seed_file": str(out)}, indent=2))


def cmd_hash(args):
    config = _config(args)
    permission = _load_permission(args.permission_file)
    domain = PermissionDomain(config.network_id, config.engine_id)
    print(permission_hash(permission, domain).hex())


def cmd_validate(args):
    """Validate a gateway document against the bundled JSON Schemas."""

    from spend_gateway.schema_validate import SCHEMA_FILES, validate_file

    if args.list_schemas:
        for name in sorted(SCHEMA_FILES):
            print(name)
        return

    if not args.path:
        raise SystemExit("ERROR: path is required")

    ok, msgs = validate_file(Path(args.path), schema_name=args.schema)
    for m in msgs:
        mark = "✓" if m.ok else "✗"
        print(f"{mark} {m.code}: {m.detail}")

    if not ok:
        raise SystemExit(2)


def cmd_sign_approval(args):
    """Sign the permission hash so anyone can submit approve-signed for the account."""
    config = _config(args)
    permission = _load_permission(args.permission_file)
    key = load_signing_key_from_file(args.key_file, key_id="account")
    if key is None:
        raise SystemExit(f"ERROR: cannot load signing key from {args.key_file}")
    if key.identity != permission.account:
        raise SystemExit("ERROR: key does not match the permission account")

    domain = PermissionDomain(config.network_id, config.engine_id)
    perm_hash = permission_hash(permission, domain)
    print(json.dumps({
        "permission_hash": perm_hash.hex(),
        "signature": key.sign(perm_hash).hex(),
    }, indent=2))


def cmd_cycle(args):
    from spend_gateway.manager import PermissionManager

    manager = PermissionManager.from_config(_config(args))
    permission = _load_permission(args.permission_file)
    cycle = manager.get_current_cycle(permission)
    out = cycle.to_dict()
    out["permission_hash"] = manager.get_hash(permission).hex()
    out["authorized"] = manager.is_authorized(permission)
    print(json.dumps(out, indent=2))


def _parse_trusted_keys(values: List[str]) -> Dict[str, str]:
    keys: Dict[str, str] = {}
    for item in values or []:
        key_id, sep, key_hex = item.partition("=")
        if not sep or not key_id or not key_hex:
            raise SystemExit(f"ERROR: --trusted-key must look like KEY_ID=PUBLIC_KEY_HEX, got {item!r}")
        keys[key_id] = key_hex.strip()
    return keys


def cmd_verify_audit(args):
    from spend_gateway.audit_log import TamperEvidentAuditLog

    trusted = _parse_trusted_keys(args.trusted_key)
    if args.trusted_keys_file:
        with open(args.trusted_keys_file, "r", encoding="utf-8") as f:
            trusted.update({str(k): str(v) for k, v in json.load(f).items()})
    if not trusted:
        raise SystemExit("ERROR: at least one trusted key is required")

    ok, reason, count = TamperEvidentAuditLog.verify_file(args.audit_file, trusted)
    print(json.dumps({"ok": ok, "reason": reason, "records": count}, indent=2))
    if not ok:
        raise SystemExit(2)


def cmd_serve(args):
    from spend_gateway.server import main as serve_main

    argv = ["--host", args.host, "--port", str(args.port)]
    raise SystemExit(serve_main(argv))


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Spend Permission Gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", default=None, help="Path to the permission store (default: SPG_DB_PATH)")
    parser.add_argument("--network-id", type=int, default=None, help="Network salt (default: SPG_NETWORK_ID)")
    parser.add_argument("--engine-id", default=None, help="Engine-instance salt (default: SPG_ENGINE_ID)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    keygen_parser = subparsers.add_parser("keygen", help="Generate an Ed25519 key seed file")
    keygen_parser.add_argument("--out", required=True, help="Output seed file (written with 0600)")
    keygen_parser.add_argument("--key-id", default="key", help="Key identifier")
    keygen_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")
    keygen_parser.set_defaults(func=cmd_keygen)

    hash_parser = subparsers.add_parser("hash", help="Compute a permission hash")
    hash_parser.add_argument("permission_file", help="Path to permission JSON")
    hash_parser.set_defaults(func=cmd_hash)

    validate_parser = subparsers.add_parser("validate", help="Validate a document against JSON Schemas")
    validate_parser.add_argument("path", nargs="?", help="Path to a .json document")
    validate_parser.add_argument(
        "--schema",
        default=None,
        help="Schema name override (permission|spend_request|allowed_target_config)",
    )
    validate_parser.add_argument("--list-schemas", action="store_true", help="List supported schema names")
    validate_parser.set_defaults(func=cmd_validate)

    sign_parser = subparsers.add_parser("sign-approval", help="Sign a permission approval")
    sign_parser.add_argument("permission_file", help="Path to permission JSON")
    sign_parser.add_argument("--key-file", required=True, help="Account seed file")
    sign_parser.set_defaults(func=cmd_sign_approval)

    cycle_parser = subparsers.add_parser("cycle", help="Show current cycle usage")
    cycle_parser.add_argument("permission_file", help="Path to permission JSON")
    cycle_parser.set_defaults(func=cmd_cycle)

    audit_parser = subparsers.add_parser("verify-audit", help="Verify a signed audit mirror")
    audit_parser.add_argument("audit_file", help="Path to the JSONL audit mirror")
    audit_parser.add_argument(
        "--trusted-key",
        action="append",
        default=[],
        help="KEY_ID=PUBLIC_KEY_HEX (repeatable)",
    )
    audit_parser.add_argument("--trusted-keys-file", help="JSON object of key_id -> public key hex")
    audit_parser.set_defaults(func=cmd_verify_audit)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP gateway")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose)
    try:
        args.func(args)
    except SpendError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
