"""
Deterministic hashing helpers: canonical JSON, sha256 digests, content ids.

Every digest in the pipeline (proof fingerprints, delta integrity digests,
spike cids, reward digests) goes through canonical_json so key order and
float formatting never change a digest.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

CID_PREFIX = "Qm"
CID_HEX_LEN = 44


def canonical_json(payload: Any) -> str:
    """Stable JSON: sorted keys, no whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(content: str | bytes) -> str:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def content_cid(payload: Any) -> str:
    """Content-addressed reference for audit records ("Qm" + truncated sha256)."""
    return CID_PREFIX + sha256_hex(canonical_json(payload))[:CID_HEX_LEN]
