from __future__ import annotations

import hashlib
import json
from typing import Any, Dict


def _normalize(obj: Any) -> Any:
    """
    Normalize JSON-like objects for stable hashing:
    - dict keys sorted
    - lists preserved in order
    """
    if isinstance(obj, dict):
        return {k: _normalize(obj[k]) for k in sorted(obj.keys())}
    if isinstance(obj, (list, tuple)):
        return [_normalize(x) for x in obj]
    return obj


def stable_json_dumps(payload: Dict[str, Any]) -> str:
    """Deterministic JSON serialization for hashing."""
    return json.dumps(_normalize(payload), separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def alert_key(disclosure_id: str, conflict_type: str, dedupe_key: str, evaluation_version: int) -> str:
    """Idempotency key for a conflict alert: one row per (disclosure, type, match) per version."""
    base = f"{disclosure_id}|{conflict_type}|{dedupe_key}|v{evaluation_version}"
    return sha256_hex(base)[:32]


def trigger_key(rule_id: str, disclosure_id: str, evaluation_version: int) -> str:
    """Idempotency key for a threshold trigger log: a rule fires at most once per disclosure."""
    return sha256_hex(f"{rule_id}|{disclosure_id}|v{evaluation_version}")[:32]


def fact_fingerprint(facts: Dict[str, Any]) -> str:
    """Short digest of a fact set, logged alongside rule failures."""
    return sha256_hex(stable_json_dumps(facts))[:12]
