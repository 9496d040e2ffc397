"""Stable reason codes attached to audit entries.

Soft failures never abort the enclosing operation; they are recorded here so
operators can find degraded transitions in the audit log.
"""

from __future__ import annotations

APPROVAL_REMOVAL_FAILED = "APPROVAL_REMOVAL_FAILED"
SIGNATURE_MISSING_AT_COMMIT = "SIGNATURE_MISSING_AT_COMMIT"
EXTRACTION_FAILED_AT_COMMIT = "EXTRACTION_FAILED_AT_COMMIT"
COMMIT_BELOW_THRESHOLD = "COMMIT_BELOW_THRESHOLD"
