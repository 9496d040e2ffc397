from __future__ import annotations

import base64
import json
import sqlite3
from pathlib import Path

import pytest

from policyquorum.cli import main
from policyquorum.codec.envelope import EnvelopeCodec
from policyquorum.lifecycle import PolicyLifecycleManager
from policyquorum.signing import CRYPTO_AVAILABLE, generate_keypair, load_private_key
from policyquorum.store.sqlite import SQLitePolicyStore

requires_crypto = pytest.mark.skipif(not CRYPTO_AVAILABLE, reason="cryptography not installed")


def _populate(db: Path, make_request, signing_key=None) -> str:
    store = SQLitePolicyStore(db, signing_key=signing_key)
    manager = PolicyLifecycleManager(store=store, codec=EnvelopeCodec())
    policy = manager.create(make_request(), "ssh:root", 1, requester_id="admin-1")
    manager.vote(policy.id, "alice", "alice@example.com", True, make_request("ssh:root", "alice"))
    manager.commit(policy.id, "admin-1", signature=b"sig")
    return policy.id


def test_pending_list_and_show(tmp_path: Path, make_request, capsys: pytest.CaptureFixture[str]) -> None:
    db = tmp_path / "policies.db"
    policy_id = _populate(db, make_request)

    assert main(["pending", "list", "--db", str(db)]) == 0
    listing = json.loads(capsys.readouterr().out)
    assert [(p["id"], p["status"]) for p in listing] == [(policy_id, "committed")]

    assert main(["pending", "list", "--db", str(db), "--status", "pending"]) == 0
    assert json.loads(capsys.readouterr().out) == []

    assert main(["pending", "show", policy_id, "--db", str(db)]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["status"] == "committed"
    assert [d["voter_id"] for d in shown["decisions"]] == ["alice"]


def test_pending_show_missing(tmp_path: Path, make_request, capsys: pytest.CaptureFixture[str]) -> None:
    db = tmp_path / "policies.db"
    _populate(db, make_request)

    assert main(["pending", "show", "missing", "--db", str(db)]) == 1
    assert "not found" in capsys.readouterr().err


def test_committed_show(tmp_path: Path, make_request, capsys: pytest.CaptureFixture[str]) -> None:
    db = tmp_path / "policies.db"
    policy_id = _populate(db, make_request)

    assert main(["committed", "show", "ssh:root", "--db", str(db)]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["source_policy_id"] == policy_id
    assert base64.b64decode(payload["policy_data"])

    assert main(["committed", "show", "ssh:nobody", "--db", str(db)]) == 1


def test_missing_database(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["audit", "verify", "--db", str(tmp_path / "absent.db")])

    assert code == 1
    assert "database file not found" in capsys.readouterr().err
    assert not (tmp_path / "absent.db").exists()


def test_audit_verify_success(tmp_path: Path, make_request, capsys: pytest.CaptureFixture[str]) -> None:
    db = tmp_path / "policies.db"
    _populate(db, make_request)

    code = main(["audit", "verify", "--db", str(db), "--json"])

    captured = capsys.readouterr()
    assert code == 0
    assert json.loads(captured.out) == {"status": "ok", "entries": 3}


def test_audit_verify_failure_on_tamper(
    tmp_path: Path, make_request, capsys: pytest.CaptureFixture[str]
) -> None:
    db = tmp_path / "policies.db"
    _populate(db, make_request)
    conn = sqlite3.connect(db)
    conn.execute("UPDATE audit_log SET entry_hash = 'bogus' WHERE id = 2")
    conn.commit()
    conn.close()

    code = main(["audit", "verify", "--db", str(db)])

    captured = capsys.readouterr()
    assert code == 1
    assert "verify failed" in captured.err
    assert captured.out == ""


def test_audit_export_formats(tmp_path: Path, make_request, capsys: pytest.CaptureFixture[str]) -> None:
    db = tmp_path / "policies.db"
    _populate(db, make_request)

    assert main(["audit", "export", "--db", str(db), "--format", "json"]) == 0
    entries = json.loads(capsys.readouterr().out)
    assert [e["event"] for e in entries] == ["created", "approved", "committed"]

    assert main(["audit", "export", "--db", str(db), "--format", "ndjson"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 3
    assert json.loads(lines[1])["actor_email"] == "alice@example.com"

    output = tmp_path / "audit.csv"
    assert main(["audit", "export", "--db", str(db), "--format", "csv", "--output", str(output)]) == 0
    rows = output.read_text(encoding="utf-8").splitlines()
    assert rows[0].startswith("sequence,created_at,event")
    assert len(rows) == 4
    assert "SIGNATURE_MISSING_AT_COMMIT" not in rows[3]


@requires_crypto
def test_keygen_and_signed_verify(tmp_path: Path, make_request, capsys: pytest.CaptureFixture[str]) -> None:
    private_path = tmp_path / "keys" / "private.pem"
    public_path = tmp_path / "keys" / "public.pem"

    assert main(["keygen", "--private-key", str(private_path), "--public-key", str(public_path)]) == 0
    assert main(["keygen", "--private-key", str(private_path), "--public-key", str(public_path)]) == 1
    assert "already exists" in capsys.readouterr().err

    db = tmp_path / "policies.db"
    _populate(db, make_request, signing_key=load_private_key(private_path.read_bytes()))

    assert main(["audit", "verify", "--db", str(db), "--public-key", str(public_path)]) == 0
    assert "verification ok" in capsys.readouterr().out


@requires_crypto
def test_verify_unsigned_database_with_public_key_fails(
    tmp_path: Path, make_request, capsys: pytest.CaptureFixture[str]
) -> None:
    _, public_pem = generate_keypair()
    public_path = tmp_path / "public.pem"
    public_path.write_bytes(public_pem)
    db = tmp_path / "policies.db"
    _populate(db, make_request)

    code = main(["audit", "verify", "--db", str(db), "--public-key", str(public_path), "--json"])

    assert code == 1
    assert json.loads(capsys.readouterr().out)["status"] == "failed"
