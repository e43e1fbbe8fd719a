# fingerprint.py
# Stable SHA-256 digests for pool keys, credential fingerprints and step
# signatures. Two values that serialize identically always hash identically.
#
# Built on hashlib over canonical JSON, so digests are portable across processes.

import hashlib
import json
from typing import Any

ANONYMOUS = "anonymous"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _serialize(value: Any) -> str:
    """Deterministic serialization. sort_keys is non-negotiable."""
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)


# ---------------------------------------------------------------------------
# Public digests
# ---------------------------------------------------------------------------


def digest(value: Any) -> str:
    return _sha256(_serialize(value))


def credential_fingerprint(credentials: dict[str, str], user_id: str | None = None) -> str:
    """
    Fingerprint of one user's credential set for one tool server.

    The owner is part of the digest: two users never share a session even if
    they hold identical secrets. An empty credential set maps to the shared
    ANONYMOUS fingerprint, so servers without auth are pooled once.
    """
    if not credentials:
        return ANONYMOUS
    return digest({"user": user_id, "credentials": credentials})


def pool_key(canonical_name: str, fingerprint: str) -> str:
    return digest({"server": canonical_name, "fingerprint": fingerprint})


def step_signature(canonical_name: str, tool_name: str, tool_input: dict[str, Any]) -> str:
    """Identity of a tool call for repetition detection."""
    return digest({"server": canonical_name, "tool": tool_name, "input": tool_input})
