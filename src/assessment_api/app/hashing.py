"""Content fingerprint for questionnaire submissions.

The asset hash is advisory metadata shown to the submitter. It is
content-addressed: re-hashing the same answers always yields the same digest,
whatever the submission reference or submission time.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from .models import Submission


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_submission_content(submission: Submission) -> dict[str, Any]:
    """Semantic content of a submission: sections and answers, nulls dropped."""
    return submission.model_dump(mode="json", exclude={"submission_ref"}, exclude_none=True)


def asset_hash(submission: Submission) -> str:
    payload = canonical_json(canonical_submission_content(submission))
    return sha256_hex(payload.encode("utf-8"))
