from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from tapquest_core.backup import BackupBlob, PasswordVerifier
from tapquest_core.errors import TransportFailure, TransportPermanentError, TransportTransientError
from tapquest_core.message import EncryptedMessage
from tapquest_core.state import AuthToken, Profile

__all__ = [
    "TransportFailure", "TransportTransientError", "TransportPermanentError",
    "AccountRecord", "QRCodeRecord",
    "MessageTransport", "AccountStore", "RedemptionStore", "BaseTransport",
]


@dataclass
class AccountRecord:
    auth_token: AuthToken
    password_verifier: Optional[PasswordVerifier]
    latest_backup: Optional[BackupBlob]


@dataclass
class QRCodeRecord:
    id: str
    item_id: str
    item_name: str
    owner_encryption_public_key: str


class MessageTransport:
    def post_messages(self, token: str, messages: List[EncryptedMessage]) -> Dict[str, Any]:
        raise NotImplementedError

    def get_messages(self, token: str, cursor: Optional[int] = None) -> List[EncryptedMessage]:
        """Messages addressed to the token's user with seq > cursor, or all when cursor is None."""
        raise NotImplementedError


class AccountStore:
    def create_account(self, profile: Profile, public_keys: Dict[str, str],
                       password_verifier: Optional[PasswordVerifier]) -> AuthToken:
        raise NotImplementedError

    def find_account(self, identifier: str) -> AccountRecord:
        raise NotImplementedError

    def save_backup(self, token: str, blob: BackupBlob) -> None:
        raise NotImplementedError

    def update_profile(self, token: str, **fields: Any) -> None:
        raise NotImplementedError


class RedemptionStore:
    def get_qr(self, qr_id: str) -> QRCodeRecord:
        raise NotImplementedError

    def atomic_redeem(self, token: str, qr_id: str) -> bool:
        """Compare-and-swap redeemed false->true; True for exactly one caller."""
        raise NotImplementedError


class BaseTransport(MessageTransport, AccountStore, RedemptionStore):
    """
    Every adapter serves the three collaborator interfaces.

    Calls block; sessions run them on worker threads.
    """
    name: str = "base"

    def close(self) -> None:
        return
