"""
tapquest_core.message
---------------------
Defines ActivityEvent (the plaintext log entry) and EncryptedMessage (its
sealed, signed form on the wire). Every record in the activity log travels
as an EncryptedMessage.

Key features:
- Deterministic canonicalization for signing
- Replay-safe identifiers (event id, (timestamp, id) ordering key)
- Sender public keys attached for authenticity checks on fetch
"""

from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, Optional, Tuple
from .constants import (
    SCHEMA_VERSION,
    EVENT_KINDS,
    KIND_ITEM_REDEEMED,
    KIND_LOCATION_TAP,
    KIND_PERSON_TAP,
    KIND_REGISTERED,
)
from .utils import new_id, now_ms, canonical_json

PAYLOAD_FIELDS = {
    KIND_REGISTERED: (),
    KIND_PERSON_TAP: ("person_id", "display_name", "encryption_public_key", "signature_public_key"),
    KIND_LOCATION_TAP: ("location_id", "location_name", "signature_public_key", "signature_message", "signature"),
    KIND_ITEM_REDEEMED: ("item_id", "item_name", "qr_code_id"),
}


@dataclass(frozen=True)
class ActivityEvent:
    kind: str
    payload: Dict[str, Any]
    sender_public_key: str
    recipient_public_key: str
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)  # ms since epoch

    @property
    def order_key(self) -> Tuple[int, str]:
        return (self.timestamp, self.id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ActivityEvent":
        kind = data["kind"]
        if kind not in EVENT_KINDS:
            raise ValueError(f"unknown event kind: {kind}")
        payload = data.get("payload")
        if not isinstance(payload, dict):
            raise ValueError("event payload must be an object")
        missing = [k for k in PAYLOAD_FIELDS[kind] if k not in payload]
        if missing:
            raise ValueError(f"{kind} payload missing {missing}")
        mistyped = [k for k in PAYLOAD_FIELDS[kind] if not isinstance(payload[k], str)]
        if mistyped:
            raise ValueError(f"{kind} payload fields must be strings: {mistyped}")
        return cls(
            id=str(data["id"]),
            kind=kind,
            payload=dict(payload),
            timestamp=int(data["timestamp"]),
            sender_public_key=str(data["sender_public_key"]),
            recipient_public_key=str(data["recipient_public_key"]),
        )


@dataclass
class EncryptedMessage:
    schema_ver: str = SCHEMA_VERSION
    sender_public_key: str = ""            # X25519, base64
    sender_signature_public_key: str = ""  # Ed25519, base64
    recipient_public_key: str = ""         # X25519, base64
    nonce: str = ""                        # AES-GCM iv, base64
    ciphertext: str = ""                   # base64
    sig: Optional[str] = None              # base64 Ed25519 signature over to_signing_bytes()
    seq: Optional[int] = None              # server-assigned cursor, None until posted

    def to_signing_bytes(self) -> bytes:
        body = {
            "schema_ver": self.schema_ver,
            "sender_public_key": self.sender_public_key,
            "sender_signature_public_key": self.sender_signature_public_key,
            "recipient_public_key": self.recipient_public_key,
            "nonce": self.nonce,
            "ciphertext": self.ciphertext,
        }
        return canonical_json(body)

    def aad_fields(self) -> Dict[str, str]:
        # Binds the ciphertext to its addressing so it cannot be re-targeted
        return {
            "schema_ver": self.schema_ver,
            "sender": self.sender_public_key,
            "recipient": self.recipient_public_key,
        }

    def to_dict(self, include_seq: bool = True) -> Dict[str, Any]:
        d = asdict(self)
        if not include_seq:
            d.pop("seq")
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedMessage":
        """Reconstruct from a dict (inverse of to_dict)."""
        return cls(
            schema_ver=data.get("schema_ver", SCHEMA_VERSION),
            sender_public_key=data.get("sender_public_key", ""),
            sender_signature_public_key=data.get("sender_signature_public_key", ""),
            recipient_public_key=data.get("recipient_public_key", ""),
            nonce=data.get("nonce", ""),
            ciphertext=data.get("ciphertext", ""),
            sig=data.get("sig"),
            seq=data.get("seq"),
        )
