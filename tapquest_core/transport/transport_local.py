# tapquest_core/transport/transport_local.py
"""
In-process stand-in for the quest server: accounts, backups, the message
relay and the redemption store, all behind one lock. Used for tests and
offline demos.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import secrets
import threading

from tapquest_core.backup import BackupBlob, PasswordVerifier
from tapquest_core.errors import ConflictFailure, TransportPermanentError
from tapquest_core.logger import get_logger
from tapquest_core.message import EncryptedMessage
from tapquest_core.state import AuthToken, Profile
from tapquest_core.transport.transport_base import AccountRecord, BaseTransport, QRCodeRecord
from tapquest_core.utils import new_id

log = get_logger("TapQuest.Transport.Local")

TOKEN_TTL = timedelta(days=1)


@dataclass
class _Account:
    user_id: str
    profile: Profile
    public_keys: Dict[str, str]
    password_verifier: Optional[PasswordVerifier]
    backups: List[BackupBlob] = field(default_factory=list)


@dataclass
class _QRCode:
    record: QRCodeRecord
    redeemed: bool = False


class LocalAdapter(BaseTransport):
    name = "local"

    def __init__(self):
        self._lock = threading.Lock()
        self.accounts: Dict[str, _Account] = {}        # email -> account
        self.tokens: Dict[str, tuple] = {}             # token -> (email, expires_at)
        self.messages: List[EncryptedMessage] = []
        self.qr_codes: Dict[str, _QRCode] = {}
        self._seq = 0

    # ------------------------------------------------------------------
    # auth
    # ------------------------------------------------------------------
    def _issue_token(self, email: str) -> AuthToken:
        token = AuthToken(value=secrets.token_urlsafe(32), expires_at=datetime.now(timezone.utc) + TOKEN_TTL)
        self.tokens[token.value] = (email, token.expires_at)
        return token

    def _account_for(self, token: str) -> _Account:
        entry = self.tokens.get(token)
        if entry is None or entry[1] <= datetime.now(timezone.utc):
            raise TransportPermanentError("invalid or expired token", status=401)
        return self.accounts[entry[0]]

    # ------------------------------------------------------------------
    # AccountStore
    # ------------------------------------------------------------------
    def create_account(self, profile: Profile, public_keys: Dict[str, str],
                       password_verifier: Optional[PasswordVerifier]) -> AuthToken:
        with self._lock:
            if profile.email in self.accounts:
                raise ConflictFailure(ConflictFailure.ALREADY_REGISTERED, "account already registered")
            self.accounts[profile.email] = _Account(
                user_id=new_id(),
                profile=replace(profile),
                public_keys=dict(public_keys),
                password_verifier=password_verifier,
            )
            log.info(f"[LOCAL ACCOUNT] created {profile.email}")
            return self._issue_token(profile.email)

    def find_account(self, identifier: str) -> AccountRecord:
        with self._lock:
            account = self.accounts.get(identifier)
            if account is None:
                raise TransportPermanentError("user not found", status=404)
            latest = account.backups[-1] if account.backups else None
            return AccountRecord(
                auth_token=self._issue_token(identifier),
                password_verifier=account.password_verifier,
                latest_backup=latest,
            )

    def save_backup(self, token: str, blob: BackupBlob) -> None:
        with self._lock:
            self._account_for(token).backups.append(blob)

    def update_profile(self, token: str, **fields: Any) -> None:
        with self._lock:
            account = self._account_for(token)
            for name, value in fields.items():
                if name in ("password_salt", "password_hash"):
                    continue
                if not hasattr(account.profile, name):
                    raise TransportPermanentError(f"unknown profile field {name}", status=400)
                setattr(account.profile, name, value)
            if "password_salt" in fields and "password_hash" in fields:
                account.password_verifier = PasswordVerifier(salt=fields["password_salt"], hash=fields["password_hash"])

    # ------------------------------------------------------------------
    # MessageTransport
    # ------------------------------------------------------------------
    def post_messages(self, token: str, messages: List[EncryptedMessage]) -> Dict[str, Any]:
        with self._lock:
            self._account_for(token)
            seqs = []
            for msg in messages:
                self._seq += 1
                stored = EncryptedMessage.from_dict(msg.to_dict(include_seq=False))
                stored.seq = self._seq
                self.messages.append(stored)
                seqs.append(self._seq)
            log.info(f"[LOCAL PUB] accepted={len(seqs)}")
            return {"accepted": len(seqs), "seqs": seqs}

    def get_messages(self, token: str, cursor: Optional[int] = None) -> List[EncryptedMessage]:
        with self._lock:
            account = self._account_for(token)
            own_key = account.public_keys.get("encryption_public_key")
            return [
                EncryptedMessage.from_dict(m.to_dict())
                for m in self.messages
                if m.recipient_public_key == own_key and (cursor is None or m.seq > cursor)
            ]

    # ------------------------------------------------------------------
    # RedemptionStore
    # ------------------------------------------------------------------
    def add_qr_code(self, record: QRCodeRecord) -> None:
        with self._lock:
            self.qr_codes[record.id] = _QRCode(record=record)

    def get_qr(self, qr_id: str) -> QRCodeRecord:
        with self._lock:
            qr = self.qr_codes.get(qr_id)
            if qr is None:
                raise TransportPermanentError("invalid QR code", status=404)
            return qr.record

    def atomic_redeem(self, token: str, qr_id: str) -> bool:
        with self._lock:
            self._account_for(token)
            qr = self.qr_codes.get(qr_id)
            if qr is None:
                raise TransportPermanentError("invalid QR code", status=404)
            if qr.redeemed:
                return False
            qr.redeemed = True
            return True
