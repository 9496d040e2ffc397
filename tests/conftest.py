from __future__ import annotations

import os
import shutil
import uuid
from pathlib import Path
from typing import Callable, Iterator

import pytest

from policyquorum.codec.envelope import EnvelopeCodec, EnvelopeRequest
from policyquorum.lifecycle import PolicyLifecycleManager
from policyquorum.store.sqlite import SQLitePolicyStore


@pytest.fixture
def tmp_path() -> Iterator[Path]:
    """Return a writable temp dir under %TEMP% without tempfile.mkdtemp ACL quirks."""
    temp_root = Path(os.environ.get("TEMP", Path.cwd()))
    root = temp_root / "policyquorum_test_runs"
    root.mkdir(parents=True, exist_ok=True)
    path = root / f"run_{uuid.uuid4().hex}"
    path.mkdir(parents=True, exist_ok=True)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def store(tmp_path: Path) -> SQLitePolicyStore:
    return SQLitePolicyStore(tmp_path / "policies.db")


@pytest.fixture
def manager(store: SQLitePolicyStore) -> PolicyLifecycleManager:
    return PolicyLifecycleManager(store=store, codec=EnvelopeCodec())


@pytest.fixture
def make_request() -> Callable[..., bytes]:
    """Factory for envelope request bytes with optional fake approval shares."""

    def _make(role_id: str = "ssh:root", *approvers: str, **policy: object) -> bytes:
        request = EnvelopeRequest.new(role_id, **policy)
        approvals = {voter: f"share-{voter}" for voter in approvers}
        return EnvelopeRequest(request.requested_policy(), approvals).encode()

    return _make
