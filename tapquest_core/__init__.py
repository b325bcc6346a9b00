"""
TapQuest Core Package
=====================
Tap verification and the self-custodied encrypted activity log behind the
Cursive Quests NFC tap app.

Provides:
- Signature verification for CMAC, person/location and sig-card taps
- The tap state machine and its five terminal outcomes
- Password-derived backup encryption (scrypt + AES-GCM)
- The encrypted, append-only activity log and its idempotent fold
- At-most-once redemption of reward QR codes
- A Session actor tying these together over a pluggable transport and storage
"""

from .errors import (
    AuthenticationFailure,
    ConflictFailure,
    FatalRegistrationFailure,
    NotLoggedIn,
    TapQuestError,
    TransportFailure,
    VerificationFailure,
)
from .session import Session

__all__ = [
    "Session",
    "TapQuestError",
    "VerificationFailure",
    "AuthenticationFailure",
    "TransportFailure",
    "ConflictFailure",
    "FatalRegistrationFailure",
    "NotLoggedIn",
]
