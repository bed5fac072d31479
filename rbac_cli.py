#!/usr/bin/env python3
"""
RBAC Lens - Command Line Interface

Usage:
    rbac-lens resolve --kind K --name N [--namespace NS]   Effective permissions for a subject
    rbac-lens groups                                       Groups referenced by any binding
    rbac-lens group-details NAME                           Bindings and ClusterRoles for a group
    rbac-lens append --action A --kind K --name N ...      Append an audit record
    rbac-lens verify [--from N] [--to N]                   Verify the audit chain (exit 1 on divergence)
    rbac-lens history [--limit N]                          Show recent audit records
    rbac-lens export --out FILE                            Export the chain as JSONL
    rbac-lens verify-export FILE                           Verify an exported chain offline

Resolver commands read the snapshot given by --snapshot (or RBAC_SNAPSHOT_FILE).
Audit commands use the database given by --db (or RBAC_AUDIT_DB_PATH).

Output is JSON on stdout. Errors are printed to stderr as
{"code": ..., "message": ..., ...} with exit status 2.
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, List, Optional

from rbac_lens.audit_chain import AuditChain, AuditFilter, verify_export
from rbac_lens.config import ServiceConfig
from rbac_lens.errors import RBACError, bad_request
from rbac_lens.models import Subject
from rbac_lens.resolver import list_referenced_groups, resolve_effective_permissions, resolve_group_details
from rbac_lens.signing import Ed25519KeyPair, TrustedKeyStore
from rbac_lens.snapshot import FileSnapshotProvider, load_snapshot

logger = logging.getLogger("rbac_lens")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def _emit(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _snapshot(args):
    if not args.snapshot:
        raise bad_request("no snapshot configured; pass --snapshot or set RBAC_SNAPSHOT_FILE")
    return load_snapshot(FileSnapshotProvider(args.snapshot))


def _chain(args) -> AuditChain:
    config = ServiceConfig.from_env()
    signer = None
    if config.signing_key_hex:
        try:
            signer = Ed25519KeyPair.from_seed_hex(config.signing_key_hex, config.signing_key_id)
        except ValueError as e:
            raise bad_request(f"invalid RBAC_AUDIT_SIGNING_KEY: {e}") from e
    return AuditChain(args.db, signer=signer, append_retries=config.append_retries)


def _trusted_keys(items: Optional[List[str]]) -> Optional[TrustedKeyStore]:
    """Parse repeated ``KEY_ID=PUBLIC_KEY_HEX`` options."""
    if not items:
        return None
    mapping = {}
    for item in items:
        key_id, sep, public_hex = item.partition("=")
        if not sep or not key_id or not public_hex:
            raise bad_request(f"--trusted-key must look like KEY_ID=HEX, got {item!r}")
        mapping[key_id.strip()] = public_hex.strip()
    try:
        return TrustedKeyStore.from_mapping(mapping)
    except ValueError as e:
        raise bad_request(f"invalid trusted key: {e}") from e


def cmd_resolve(args):
    """Effective permissions for one subject."""
    subject = Subject.from_dict({"kind": args.kind, "name": args.name, "namespace": args.namespace})
    result = resolve_effective_permissions(subject, _snapshot(args))
    _emit(result.to_dict())
    return 0


def cmd_groups(args):
    _emit(sorted(list_referenced_groups(_snapshot(args))))
    return 0


def cmd_group_details(args):
    _emit(resolve_group_details(args.group_name, _snapshot(args)).to_dict())
    return 0


def cmd_append(args):
    """Append one audit record."""
    actor = {"kind": args.actor_kind, "name": args.actor_name}
    if args.actor_namespace:
        actor["namespace"] = args.actor_namespace
    record = _chain(args).append(args.action, args.kind, args.name, args.namespace, actor)
    _emit(record.to_dict())
    return 0


def cmd_verify(args):
    """Verify hash chain integrity."""
    chain = _chain(args)
    result = chain.verify_chain(args.from_seq, args.to_seq, trusted_keys=_trusted_keys(args.trusted_key))
    _emit(result.to_dict())
    return 0 if result.ok else 1


def cmd_history(args):
    """Show recent audit records, newest first."""
    flt = AuditFilter(resource_kind=args.kind, namespace=args.namespace, action=args.action)
    records = _chain(args).list_records(flt, order="desc", limit=args.limit)
    _emit([r.to_api_dict() for r in records])
    return 0


def cmd_export(args):
    """Export the audit chain for external verification."""
    n = _chain(args).export_jsonl(args.out)
    _emit({"path": args.out, "records": n})
    return 0


def cmd_verify_export(args):
    result = verify_export(args.path, trusted_keys=_trusted_keys(args.trusted_key))
    _emit(result.to_dict())
    return 0 if result.ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rbac-lens",
        description="RBAC Lens CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--db",
        default=os.getenv("RBAC_AUDIT_DB_PATH") or "rbac_audit.db",
        help="Path to audit database",
    )
    parser.add_argument(
        "--snapshot",
        default=os.getenv("RBAC_SNAPSHOT_FILE"),
        help="Path to RBAC snapshot JSON",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # resolve command
    resolve_parser = subparsers.add_parser("resolve", help="Effective permissions for a subject")
    resolve_parser.add_argument("--kind", required=True, choices=["User", "Group", "ServiceAccount"])
    resolve_parser.add_argument("--name", required=True)
    resolve_parser.add_argument("--namespace", default="", help="Required for ServiceAccount")
    resolve_parser.set_defaults(func=cmd_resolve)

    # groups command
    groups_parser = subparsers.add_parser("groups", help="List groups referenced by bindings")
    groups_parser.set_defaults(func=cmd_groups)

    # group-details command
    gd_parser = subparsers.add_parser("group-details", help="Bindings and ClusterRoles for a group")
    gd_parser.add_argument("group_name")
    gd_parser.set_defaults(func=cmd_group_details)

    # append command
    append_parser = subparsers.add_parser("append", help="Append an audit record")
    append_parser.add_argument("--action", required=True, help="e.g. create, update, delete")
    append_parser.add_argument("--kind", required=True, help="Resource kind, e.g. RoleBinding")
    append_parser.add_argument("--name", required=True, help="Resource name")
    append_parser.add_argument("--namespace", default=None)
    append_parser.add_argument("--actor-kind", required=True, choices=["User", "Group", "ServiceAccount"])
    append_parser.add_argument("--actor-name", required=True)
    append_parser.add_argument("--actor-namespace", default=None)
    append_parser.set_defaults(func=cmd_append)

    # verify command
    verify_parser = subparsers.add_parser("verify", help="Verify hash chain integrity")
    verify_parser.add_argument("--from", dest="from_seq", type=int, default=1, help="First sequence")
    verify_parser.add_argument("--to", dest="to_seq", type=int, default=None, help="Last sequence")
    verify_parser.add_argument("--trusted-key", action="append", metavar="KEY_ID=HEX",
                               help="Also require valid signatures from these keys")
    verify_parser.set_defaults(func=cmd_verify)

    # history command
    history_parser = subparsers.add_parser("history", help="Show audit history")
    history_parser.add_argument("--limit", type=int, default=20, help="Number of records")
    history_parser.add_argument("--kind", default=None, help="Filter by resource kind")
    history_parser.add_argument("--namespace", default=None, help="Filter by namespace")
    history_parser.add_argument("--action", default=None, help="Filter by action")
    history_parser.set_defaults(func=cmd_history)

    # export command
    export_parser = subparsers.add_parser("export", help="Export audit chain as JSONL")
    export_parser.add_argument("--out", "-o", required=True, help="Output file")
    export_parser.set_defaults(func=cmd_export)

    # verify-export command
    ve_parser = subparsers.add_parser("verify-export", help="Verify an exported chain")
    ve_parser.add_argument("path", help="Path to exported JSONL")
    ve_parser.add_argument("--trusted-key", action="append", metavar="KEY_ID=HEX",
                           help="Also require valid signatures from these keys")
    ve_parser.set_defaults(func=cmd_verify_export)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return args.func(args)
    except RBACError as e:
        print(json.dumps(e.as_dict(), sort_keys=True), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
