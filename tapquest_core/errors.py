"""
tapquest_core.errors
--------------------
Failure taxonomy shared by every component.

- VerificationFailure: bad signature or CMAC; surfaced as an invalid tap
- AuthenticationFailure: wrong password or tag mismatch on backup decrypt
- TransportFailure: network/server error or malformed response; retryable
- ConflictFailure: already redeemed / already visited; terminal
- FatalRegistrationFailure: first self-message undeliverable after account creation
"""

from __future__ import annotations
from typing import Optional


class TapQuestError(Exception):
    pass


class VerificationFailure(TapQuestError):
    pass


class AuthenticationFailure(TapQuestError):
    pass


class TransportFailure(TapQuestError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        return True


class TransportTransientError(TransportFailure):
    pass


class TransportPermanentError(TransportFailure):
    @property
    def retryable(self) -> bool:
        return False


class ConflictFailure(TapQuestError):
    ALREADY_REDEEMED = "already_redeemed"
    ALREADY_VISITED = "already_visited"
    ALREADY_REGISTERED = "already_registered"

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code


class FatalRegistrationFailure(TapQuestError):
    pass


class NotLoggedIn(TapQuestError):
    pass
