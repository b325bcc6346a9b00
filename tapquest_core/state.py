"""
tapquest_core.state
-------------------
The local account state owned by one Session.

LocalState is an explicit value: operations take it, work on a copy and
hand the new value back; persistence goes through a StorageProvider.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import copy
import re

from .constants import DISPLAY_NAME_PATTERN
from .crypto import ed25519_generate, x25519_generate
from .message import ActivityEvent
from .utils import b64e, b64d

_DISPLAY_NAME_RE = re.compile(DISPLAY_NAME_PATTERN)


def is_valid_display_name(name: str) -> bool:
    return bool(name) and _DISPLAY_NAME_RE.match(name) is not None


@dataclass(frozen=True)
class KeyPair:
    encryption_private_key: str
    encryption_public_key: str
    signature_private_key: str
    signature_public_key: str

    @classmethod
    def generate(cls) -> "KeyPair":
        enc_priv, enc_pub = x25519_generate()
        sig_priv, sig_pub = ed25519_generate()
        return cls(
            encryption_private_key=b64e(enc_priv),
            encryption_public_key=b64e(enc_pub),
            signature_private_key=b64e(sig_priv),
            signature_public_key=b64e(sig_pub),
        )

    def encryption_private_bytes(self) -> bytes:
        return b64d(self.encryption_private_key)

    def signature_private_bytes(self) -> bytes:
        return b64d(self.signature_private_key)

    def public_keys(self) -> Dict[str, str]:
        return {
            "encryption_public_key": self.encryption_public_key,
            "signature_public_key": self.signature_public_key,
        }


@dataclass
class Profile:
    display_name: str
    email: str
    encryption_public_key: str
    signature_public_key: str
    wants_server_custody: bool = False
    allows_analytics: bool = False


@dataclass(frozen=True)
class AuthToken:
    value: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, str]:
        return {"value": self.value, "expires_at": self.expires_at.isoformat()}

    @classmethod
    def from_dict(cls, data: dict) -> "AuthToken":
        expires = data["expires_at"]
        if isinstance(expires, str):
            expires = datetime.fromisoformat(expires.replace("Z", "+00:00"))
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return cls(value=data["value"], expires_at=expires)


@dataclass(frozen=True)
class LocationSignature:
    sig: str
    msg: str
    timestamp: int


@dataclass
class PeerRecord:
    """A person met through a tap."""
    id: str
    display_name: str
    encryption_public_key: str
    signature_public_key: str
    tapped_at: int = 0
    tap_count: int = 0


@dataclass
class LocalState:
    auth_token: Optional[AuthToken] = None
    keys: Optional[KeyPair] = None
    profile: Optional[Profile] = None
    activity_log: Dict[str, ActivityEvent] = field(default_factory=dict)
    location_signatures: Dict[str, LocationSignature] = field(default_factory=dict)
    users: Dict[str, PeerRecord] = field(default_factory=dict)
    redeemed_items: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    message_cursor: Optional[int] = None

    @property
    def logged_in(self) -> bool:
        return (
            self.auth_token is not None
            and not self.auth_token.is_expired()
            and self.keys is not None
            and self.profile is not None
        )

    def copy(self) -> "LocalState":
        return copy.deepcopy(self)

    def ordered_activities(self) -> List[ActivityEvent]:
        return sorted(self.activity_log.values(), key=lambda e: e.order_key)

    # ------------------------------------------------------------------
    # Backup export / import (auth token is session-bound, never exported)
    # ------------------------------------------------------------------
    def export_dict(self) -> Dict[str, Any]:
        return {
            "keys": asdict(self.keys) if self.keys else None,
            "profile": asdict(self.profile) if self.profile else None,
            "activity_log": [e.to_dict() for e in self.ordered_activities()],
            "location_signatures": {k: asdict(v) for k, v in self.location_signatures.items()},
            "users": {k: asdict(v) for k, v in self.users.items()},
            "redeemed_items": dict(self.redeemed_items),
            "message_cursor": self.message_cursor,
        }

    @classmethod
    def import_dict(cls, data: Dict[str, Any], auth_token: Optional[AuthToken] = None) -> "LocalState":
        keys = data.get("keys")
        profile = data.get("profile")
        state = cls(
            auth_token=auth_token,
            keys=KeyPair(**keys) if keys else None,
            profile=Profile(**profile) if profile else None,
            location_signatures={
                k: LocationSignature(**v) for k, v in (data.get("location_signatures") or {}).items()
            },
            users={k: PeerRecord(**v) for k, v in (data.get("users") or {}).items()},
            redeemed_items=dict(data.get("redeemed_items") or {}),
            message_cursor=data.get("message_cursor"),
        )
        for raw in data.get("activity_log") or []:
            event = ActivityEvent.from_dict(raw)
            state.activity_log[event.id] = event
        return state

    def to_dict(self) -> Dict[str, Any]:
        d = self.export_dict()
        d["auth_token"] = self.auth_token.to_dict() if self.auth_token else None
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalState":
        token = data.get("auth_token")
        return cls.import_dict(data, AuthToken.from_dict(token) if token else None)
