"""
tapquest_core.utils
-------------------
Lightweight helpers for id generation, timestamping, base64/hex utilities, and canonical JSON serialization.
These functions keep message signing deterministic and replay-safe.
"""

from __future__ import annotations
import base64, binascii, json, time, uuid
from typing import Any, Dict, Optional

def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")

def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"), validate=True)

def hex_or_b64d(s: str) -> bytes:
    """Decode a key or signature that chips and clients emit as either hex or base64."""
    s = s.strip()
    if s.startswith("0x"):
        s = s[2:]
    try:
        return bytes.fromhex(s)
    except ValueError:
        return b64d(s)

def maybe_hex(s: str) -> Optional[bytes]:
    try:
        return binascii.unhexlify(s)
    except (binascii.Error, ValueError, TypeError):
        return None

def now_ts() -> str:
    # RFC3339 / ISO 8601 in UTC, second precision
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())

def now_ms() -> int:
    return int(time.time() * 1000)

def new_id() -> str:
    return uuid.uuid4().hex

def canonical_json(obj: Dict[str, Any]) -> bytes:
    # Deterministic, minimal JSON for signing
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")
