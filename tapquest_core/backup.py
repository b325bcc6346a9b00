"""
tapquest_core.backup
--------------------
Password-derived authenticated encryption of the exported account state.

- scrypt (memory/CPU hard) turns password + salt into a 256-bit key
- AES-256-GCM seals the exported state; the 16-byte tag travels separately
  as authentication_tag, the 12-byte iv is fresh per call
- the key is never stored; it is re-derived on every encrypt/decrypt

Custodial accounts opt out of encryption: their blob carries the exported
state in cleartext with an empty tag and iv.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional
import binascii
import hashlib
import hmac
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .config import Settings
from .constants import (
    BACKUP_KDF_CONTEXT,
    BACKUP_KEY_LEN,
    GCM_IV_LEN,
    GCM_TAG_LEN,
    PASSWORD_VERIFIER_CONTEXT,
    SALT_LEN,
    SCRYPT_N,
    SCRYPT_P,
    SCRYPT_R,
)
from .errors import AuthenticationFailure
from .logger import get_logger
from .state import AuthToken, LocalState
from .utils import b64d, b64e

log = get_logger("TapQuest.Backup")


@dataclass(frozen=True)
class BackupBlob:
    encrypted_data: str
    authentication_tag: str
    iv: str

    @property
    def custodial(self) -> bool:
        return not self.authentication_tag and not self.iv

    def to_dict(self) -> Dict[str, str]:
        return {
            "encryptedData": self.encrypted_data,
            "authenticationTag": self.authentication_tag,
            "iv": self.iv,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupBlob":
        return cls(
            encrypted_data=data["encryptedData"],
            authentication_tag=data.get("authenticationTag") or "",
            iv=data.get("iv") or "",
        )


@dataclass(frozen=True)
class PasswordVerifier:
    salt: str
    hash: str


class BackupCodec:
    def __init__(self, n: int = SCRYPT_N, r: int = SCRYPT_R, p: int = SCRYPT_P):
        self.n = n
        self.r = r
        self.p = p

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackupCodec":
        return cls(n=settings.scrypt_n, r=settings.scrypt_r, p=settings.scrypt_p)

    # ------------------------------------------------------------------
    # Key derivation
    # ------------------------------------------------------------------
    @staticmethod
    def generate_salt() -> str:
        return os.urandom(SALT_LEN).hex()

    def derive_key(self, password: str, salt: bytes) -> bytes:
        kdf = Scrypt(salt=salt, length=BACKUP_KEY_LEN, n=self.n, r=self.r, p=self.p)
        return kdf.derive(password.encode("utf-8"))

    def hash_password(self, password: str, salt: str) -> str:
        """Server-side verifier; domain-separated so it never equals a backup key."""
        return self.derive_key(password, PASSWORD_VERIFIER_CONTEXT + bytes.fromhex(salt)).hex()

    def make_password_verifier(self, password: str) -> PasswordVerifier:
        salt = self.generate_salt()
        return PasswordVerifier(salt=salt, hash=self.hash_password(password, salt))

    def check_password(self, password: str, verifier: PasswordVerifier) -> bool:
        return hmac.compare_digest(self.hash_password(password, verifier.salt), verifier.hash)

    @staticmethod
    def _identifier_salt(identifier: str) -> bytes:
        return hashlib.sha256(BACKUP_KDF_CONTEXT + identifier.encode("utf-8")).digest()

    # ------------------------------------------------------------------
    # Authenticated encryption
    # ------------------------------------------------------------------
    def encrypt(self, plaintext: str, identifier: str, password: str) -> BackupBlob:
        key = self.derive_key(password, self._identifier_salt(identifier))
        iv = os.urandom(GCM_IV_LEN)
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-GCM_TAG_LEN], sealed[-GCM_TAG_LEN:]
        return BackupBlob(encrypted_data=b64e(ciphertext), authentication_tag=b64e(tag), iv=b64e(iv))

    def decrypt(self, encrypted_data: str, authentication_tag: str, iv: str,
                identifier: str, password: str) -> str:
        try:
            ciphertext = b64d(encrypted_data)
            tag = b64d(authentication_tag)
            nonce = b64d(iv)
        except (binascii.Error, ValueError) as e:
            raise AuthenticationFailure(f"malformed backup blob: {e}")
        if len(tag) != GCM_TAG_LEN or len(nonce) != GCM_IV_LEN:
            raise AuthenticationFailure("malformed backup blob: bad tag or iv length")

        key = self.derive_key(password, self._identifier_salt(identifier))
        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise AuthenticationFailure("backup authentication failed")
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthenticationFailure(f"backup is not valid UTF-8: {e}")

    # ------------------------------------------------------------------
    # Account state
    # ------------------------------------------------------------------
    def create_backup(self, state: LocalState, custodial: bool, password: Optional[str] = None) -> BackupBlob:
        if state.profile is None:
            raise ValueError("cannot back up an account without a profile")
        plaintext = json.dumps(state.export_dict(), sort_keys=True)
        if custodial:
            log.info("[BACKUP] custodial backup, stored in cleartext")
            return BackupBlob(encrypted_data=plaintext, authentication_tag="", iv="")
        if not password:
            raise ValueError("a password is required for a self-custodied backup")
        return self.encrypt(plaintext, state.profile.email, password)

    def load_backup(self, blob: BackupBlob, identifier: str, password: Optional[str] = None,
                    auth_token: Optional[AuthToken] = None) -> LocalState:
        if blob.custodial:
            plaintext = blob.encrypted_data
        else:
            if password is None:
                raise AuthenticationFailure("password required to open backup")
            plaintext = self.decrypt(blob.encrypted_data, blob.authentication_tag, blob.iv, identifier, password)
        try:
            return LocalState.import_dict(json.loads(plaintext), auth_token)
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationFailure(f"backup contents unreadable: {e}")
