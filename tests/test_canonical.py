from __future__ import annotations

import pytest

from policyquorum.canonical import (
    CanonicalizationError,
    canonical_bytes,
    canonical_dumps,
    sha256_hex,
)


def test_canonical_hash_is_stable_across_key_order() -> None:
    payload_one = {"b": 1, "a": {"y": [3, {"z": "v", "a": 2}], "x": "value"}}
    payload_two = {"a": {"x": "value", "y": [3, {"a": 2, "z": "v"}]}, "b": 1}

    assert canonical_dumps(payload_one) == canonical_dumps(payload_two)
    assert canonical_dumps(payload_one) == '{"a":{"x":"value","y":[3,{"a":2,"z":"v"}]},"b":1}'
    assert sha256_hex(payload_one) == sha256_hex(payload_two)


def test_float_inputs_are_rejected() -> None:
    with pytest.raises(CanonicalizationError, match="floats"):
        canonical_dumps({"value": 1.1})


def test_strings_are_nfc_normalized() -> None:
    decomposed = "Cafe" + chr(0x0301)
    expected = "{\"name\":\"Caf" + chr(0x00E9) + "\"}"
    assert canonical_bytes({"name": decomposed}) == expected.encode("utf-8")


def test_duplicate_keys_after_normalization_are_rejected() -> None:
    with pytest.raises(CanonicalizationError, match="duplicate key"):
        canonical_dumps({"e" + chr(0x0301): 1, chr(0x00E9): 2})


def test_booleans_and_null_render_as_json_literals() -> None:
    assert canonical_dumps([True, False, None, 0]) == "[true,false,null,0]"


def test_unsupported_types_are_rejected() -> None:
    with pytest.raises(CanonicalizationError, match="not JSON-serializable"):
        canonical_dumps({"blob": b"raw"})
    with pytest.raises(CanonicalizationError, match="keys must be strings"):
        canonical_dumps({1: "x"})
