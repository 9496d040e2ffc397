"""Hash-chained audit log helpers.

Every lifecycle transition is appended as canonical JSON whose ``entry_hash``
covers the entry body and the previous entry's hash. Entries may additionally
carry an Ed25519 signature over ``entry_hash``.
"""

from __future__ import annotations

import copy
import json
from typing import Any, Iterable

from .canonical import CanonicalizationError, canonical_dumps, sha256_hex
from .errors import AuditLogError
from .signing import SigningKey, VerifyKey, sign_text, verify_text
from .types import AuditLogEntry


class AuditWriteError(AuditLogError):
    """Raised when an audit append fails."""


class AuditVerificationError(AuditLogError):
    """Raised when audit chain verification fails."""


def prepare_entry(record: dict[str, Any], prev_hash: str | None) -> dict[str, Any]:
    """Return a new record with chain hashes computed.

    This is the single source of truth for audit chain hashing.
    """
    candidate = copy.deepcopy(record)
    candidate["prev_entry_hash"] = prev_hash
    candidate["entry_hash"] = None
    candidate["entry_hash"] = sha256_hex(candidate)
    return candidate


def seal_entry(
    entry: AuditLogEntry, prev_hash: str | None, signing_key: SigningKey | None = None
) -> tuple[str, str, str | None]:
    """Return (entry_json, entry_hash, signature) ready for persistence."""
    try:
        prepared = prepare_entry(entry.to_record(), prev_hash)
        entry_hash = prepared["entry_hash"]
        signature = sign_text(signing_key, entry_hash) if signing_key is not None else None
        return canonical_dumps(prepared), entry_hash, signature
    except (CanonicalizationError, RuntimeError, ValueError) as exc:
        raise AuditWriteError(str(exc)) from exc


def load_entry(
    entry_json: str, *, sequence: int | None = None, signature: str | None = None
) -> AuditLogEntry:
    record = json.loads(entry_json)
    return AuditLogEntry.from_record(
        record,
        sequence=sequence,
        prev_entry_hash=record.get("prev_entry_hash"),
        entry_hash=record.get("entry_hash"),
        entry_signature=signature,
    )


def verify_chain(
    rows: Iterable[tuple[str, str | None, str | None, str | None]],
    *,
    public_key: VerifyKey | None = None,
) -> int:
    """Verify ``(entry_json, entry_hash, prev_entry_hash, signature)`` rows in order.

    Returns the number of verified entries. Fails on any tamper, gap or
    reordering.
    """
    expected_prev: str | None = None
    count = 0
    for row_number, (entry_json, row_hash, row_prev, signature) in enumerate(rows, start=1):
        if not isinstance(entry_json, str) or not entry_json:
            raise AuditVerificationError(f"empty entry at row {row_number}")
        try:
            entry = json.loads(entry_json)
        except json.JSONDecodeError as exc:
            raise AuditVerificationError(f"invalid JSON at row {row_number}") from exc
        if not isinstance(entry, dict):
            raise AuditVerificationError(f"row {row_number} is not an object")
        if canonical_dumps(entry) != entry_json:
            raise AuditVerificationError(f"row {row_number} is not canonical")

        prev_hash = entry.get("prev_entry_hash")
        if prev_hash != expected_prev:
            raise AuditVerificationError(f"prev_entry_hash mismatch at row {row_number}")

        body = dict(entry)
        body["entry_hash"] = None
        actual_hash = entry.get("entry_hash")
        if not isinstance(actual_hash, str) or sha256_hex(body) != actual_hash:
            raise AuditVerificationError(f"entry_hash mismatch at row {row_number}")
        if actual_hash != row_hash:
            raise AuditVerificationError(f"entry_hash column mismatch at row {row_number}")
        if prev_hash != row_prev:
            raise AuditVerificationError(f"prev_entry_hash column mismatch at row {row_number}")

        if public_key is not None:
            if not isinstance(signature, str):
                raise AuditVerificationError(f"entry_signature missing at row {row_number}")
            if not verify_text(public_key, actual_hash, signature):
                raise AuditVerificationError(f"entry_signature invalid at row {row_number}")

        expected_prev = actual_hash
        count += 1
    return count