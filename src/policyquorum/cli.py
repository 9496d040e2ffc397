"""Command-line interface for policyquorum."""

from __future__ import annotations

import argparse
import base64
import csv
import json
import logging
import sys
from pathlib import Path
from typing import Iterable

from .audit import AuditVerificationError
from .config import Settings
from .errors import PolicyQuorumError
from .signing import generate_keypair, load_public_key
from .store.sqlite import SQLitePolicyStore
from .types import AuditLogEntry, PendingPolicy, PolicyStatus

CSV_FIELDS = (
    "sequence",
    "created_at",
    "event",
    "policy_id",
    "role_id",
    "actor_id",
    "actor_email",
    "policy_status",
    "approval_count",
    "rejection_count",
    "threshold",
    "details",
    "reason_codes",
    "entry_hash",
)


def _format_optional_dependency_error(exc: Exception) -> str:
    message = str(exc)
    if isinstance(exc, RuntimeError) and "cryptography" in message and "[crypto]" not in message:
        return f"{message} (install \"policyquorum[crypto]\")"
    return message


def _stringify(value: object) -> str:
    if value is None:
        return ""
    return str(value)


def _flatten_entry(entry: dict[str, object]) -> dict[str, str]:
    row = {name: _stringify(entry.get(name)) for name in CSV_FIELDS}
    codes = entry.get("reason_codes")
    if isinstance(codes, list):
        row["reason_codes"] = ";".join(str(code) for code in codes)
    return row


def _write_entries(
    entries: Iterable[dict[str, object]],
    output_format: str,
    output_path: Path | None,
) -> int:
    """Write entries in the specified format, streaming them one at a time."""
    output = sys.stdout
    close_output = False
    if output_path is not None:
        output = output_path.open("w", encoding="utf-8", newline="")
        close_output = True
    try:
        if output_format == "json":
            output.write("[")
            first = True
            for entry in entries:
                if not first:
                    output.write(",")
                first = False
                output.write(json.dumps(entry, ensure_ascii=False))
            output.write("]\n")
        elif output_format == "ndjson":
            for entry in entries:
                output.write(json.dumps(entry, ensure_ascii=False, separators=(",", ":")) + "\n")
        elif output_format == "csv":
            writer = csv.DictWriter(
                output,
                fieldnames=CSV_FIELDS,
                extrasaction="ignore",
                lineterminator="\n",
            )
            writer.writeheader()
            for entry in entries:
                writer.writerow(_flatten_entry(entry))
        else:
            raise ValueError(f"unknown format: {output_format}")
    finally:
        if close_output:
            output.close()
    return 0


def _entry_dict(entry: AuditLogEntry) -> dict[str, object]:
    return entry.model_dump(mode="json")


def _open_store(db_path: Path) -> SQLitePolicyStore | None:
    if not db_path.exists():
        print("database file not found", file=sys.stderr)
        return None
    return SQLitePolicyStore(db_path)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="policyquorum", add_help=True)
    subparsers = parser.add_subparsers(dest="command", required=True)
    settings = Settings.from_env()

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=settings.host, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=settings.port, help="Bind port")

    def add_db(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--db", type=Path, default=settings.db_path, help="Path to SQLite database")

    pending_parser = subparsers.add_parser("pending", help="Inspect pending policies")
    pending_sub = pending_parser.add_subparsers(dest="pending_command", required=True)
    pending_list = pending_sub.add_parser("list", help="List pending policies")
    add_db(pending_list)
    pending_list.add_argument(
        "--status",
        action="append",
        choices=[status.value for status in PolicyStatus],
        help="Filter by status (repeatable)",
    )
    pending_show = pending_sub.add_parser("show", help="Show one policy and its decisions")
    pending_show.add_argument("policy_id", help="Pending policy id")
    add_db(pending_show)

    committed_parser = subparsers.add_parser("committed", help="Inspect committed policies")
    committed_sub = committed_parser.add_subparsers(dest="committed_command", required=True)
    committed_show = committed_sub.add_parser("show", help="Show the committed policy for a role")
    committed_show.add_argument("role_id", help="Role id, e.g. ssh:root")
    add_db(committed_show)

    audit_parser = subparsers.add_parser("audit", help="Audit log tools")
    audit_sub = audit_parser.add_subparsers(dest="audit_command", required=True)
    verify_parser = audit_sub.add_parser("verify", help="Verify the audit hash chain")
    add_db(verify_parser)
    verify_parser.add_argument("--json", action="store_true", help="Output JSON")
    verify_parser.add_argument("--public-key", type=Path, help="Path to Ed25519 public key PEM")
    export_parser = audit_sub.add_parser("export", help="Export audit entries")
    add_db(export_parser)
    export_parser.add_argument(
        "--format",
        choices=("json", "ndjson", "csv"),
        default="ndjson",
        help="Output format",
    )
    export_parser.add_argument("--output", type=Path, help="Output file path")

    keygen_parser = subparsers.add_parser("keygen", help="Generate Ed25519 key pair")
    keygen_parser.add_argument("--private-key", type=Path, required=True, help="Path to private key PEM")
    keygen_parser.add_argument("--public-key", type=Path, required=True, help="Path to public key PEM")
    keygen_parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing key files",
    )

    return parser.parse_args(argv)


def _cmd_serve(host: str, port: int) -> int:
    import uvicorn

    from .api import app_from_settings

    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        app = app_from_settings(settings)
    except (OSError, PolicyQuorumError, RuntimeError, ValueError) as exc:
        print(f"serve failed: {_format_optional_dependency_error(exc)}", file=sys.stderr)
        return 1
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
    return 0


def _policy_dict(policy: PendingPolicy) -> dict[str, object]:
    payload = policy.model_dump(mode="json", exclude={"policy_request_data"})
    payload["quorum_reached"] = policy.quorum_reached
    return payload


def _cmd_pending_list(db_path: Path, statuses: list[str] | None) -> int:
    store = _open_store(db_path)
    if store is None:
        return 1
    wanted = [PolicyStatus(value) for value in statuses] if statuses else None
    policies = [_policy_dict(policy) for policy in store.list_pending(wanted)]
    print(json.dumps(policies, ensure_ascii=False, indent=2))
    return 0


def _cmd_pending_show(db_path: Path, policy_id: str) -> int:
    store = _open_store(db_path)
    if store is None:
        return 1
    policy = store.get_pending(policy_id)
    if policy is None:
        print("policy not found", file=sys.stderr)
        return 1
    payload = _policy_dict(policy)
    payload["decisions"] = [d.model_dump(mode="json") for d in store.list_decisions(policy_id)]
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


def _cmd_committed_show(db_path: Path, role_id: str) -> int:
    store = _open_store(db_path)
    if store is None:
        return 1
    committed = store.get_committed(role_id)
    if committed is None:
        print("no committed policy for role", file=sys.stderr)
        return 1
    payload = committed.model_dump(mode="json", exclude={"policy_data"})
    payload["policy_data"] = (
        base64.b64encode(committed.policy_data).decode("ascii")
        if committed.policy_data is not None
        else None
    )
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


def _cmd_verify(db_path: Path, json_output: bool, public_key_path: Path | None) -> int:
    def fail(exc: Exception) -> int:
        if json_output:
            print(json.dumps({"status": "failed", "error": _format_optional_dependency_error(exc)}))
        else:
            print(f"verify failed: {_format_optional_dependency_error(exc)}", file=sys.stderr)
        return 1

    public_key = None
    if public_key_path is not None:
        try:
            public_key = load_public_key(public_key_path.read_bytes())
        except Exception as exc:
            return fail(exc)
    store = _open_store(db_path)
    if store is None:
        return 1
    try:
        count = store.verify_audit(public_key=public_key)
    except AuditVerificationError as exc:
        return fail(exc)
    except Exception as exc:  # fail closed on unexpected issues
        return fail(exc)
    if json_output:
        print(json.dumps({"status": "ok", "entries": count}))
    else:
        print(f"verification ok ({count} entries)")
    return 0


def _cmd_export(db_path: Path, output_format: str, output_path: Path | None) -> int:
    store = _open_store(db_path)
    if store is None:
        return 1
    try:
        return _write_entries(
            (_entry_dict(entry) for entry in store.iter_audit()), output_format, output_path
        )
    except (OSError, PolicyQuorumError) as exc:
        print(f"export failed: {exc}", file=sys.stderr)
        return 1


def _cmd_keygen(
    *,
    private_key_path: Path,
    public_key_path: Path,
    overwrite: bool,
) -> int:
    if not overwrite and (private_key_path.exists() or public_key_path.exists()):
        print("key file already exists", file=sys.stderr)
        return 1
    try:
        private_key, public_key = generate_keypair()
    except Exception as exc:
        print(_format_optional_dependency_error(exc), file=sys.stderr)
        return 1
    private_key_path.parent.mkdir(parents=True, exist_ok=True)
    public_key_path.parent.mkdir(parents=True, exist_ok=True)
    private_key_path.write_bytes(private_key)
    public_key_path.write_bytes(public_key)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    if args.command == "serve":
        return _cmd_serve(args.host, args.port)
    if args.command == "pending":
        if args.pending_command == "list":
            return _cmd_pending_list(args.db, args.status)
        return _cmd_pending_show(args.db, args.policy_id)
    if args.command == "committed":
        return _cmd_committed_show(args.db, args.role_id)
    if args.command == "audit":
        if args.audit_command == "verify":
            return _cmd_verify(args.db, args.json, args.public_key)
        return _cmd_export(args.db, args.format, args.output)
    if args.command == "keygen":
        return _cmd_keygen(
            private_key_path=args.private_key,
            public_key_path=args.public_key,
            overwrite=args.overwrite,
        )
    print("unknown command", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
