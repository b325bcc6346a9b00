# tapquest_core/transport/transport_http.py
import requests
from typing import Any, Dict, List, Optional
from tapquest_core import schemas
from tapquest_core.backup import BackupBlob, PasswordVerifier
from tapquest_core.directory import Directory, DirectoryEntry, Location, Person, UnboundChip
from tapquest_core.errors import ConflictFailure, TransportPermanentError, TransportTransientError
from tapquest_core.logger import get_logger
from tapquest_core.message import EncryptedMessage
from tapquest_core.state import AuthToken, Profile
from tapquest_core.transport.transport_base import AccountRecord, BaseTransport, QRCodeRecord

log = get_logger("TapQuest.Transport.HTTP")


class HTTPAdapter(BaseTransport, Directory):
    """
    JSON-over-HTTP adapter for the quest server.

    Maps requests failures onto the transport error classes:
    - timeouts, connection errors, 5xx -> TransportTransientError (retryable)
    - 409                              -> ConflictFailure
    - other 4xx, malformed bodies      -> TransportPermanentError
    """
    name = "http"

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = session or requests.Session()

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------
    def _request(self, method: str, path: str, json: Optional[dict] = None,
                 params: Optional[dict] = None, conflict: str = ConflictFailure.ALREADY_REGISTERED) -> Any:
        url = f"{self.base_url}{path}"
        log.debug(f"[HTTP {method}] → {url}")
        try:
            res = self._http.request(method, url, json=json, params=params,
                                     headers={"Content-Type": "application/json"}, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransportTransientError(f"{method} {path} timed out: {e}")
        except requests.RequestException as e:
            raise TransportTransientError(f"{method} {path} failed: {e}")

        if res.ok:
            try:
                return res.json()
            except ValueError:
                raise TransportPermanentError(f"{method} {path} returned non-JSON body", res.status_code)

        log.error(f"[HTTP {method}] {res.status_code}: {res.text}")
        if res.status_code >= 500:
            raise TransportTransientError(f"{method} {path} server error", res.status_code)
        if res.status_code == 409:
            raise ConflictFailure(conflict, res.text)
        raise TransportPermanentError(f"{method} {path} rejected: {res.text}", res.status_code)

    @staticmethod
    def _token(model: schemas.AuthTokenModel) -> AuthToken:
        return AuthToken.from_dict({"value": model.value, "expires_at": model.expiresAt})

    # ------------------------------------------------------------------
    # AccountStore
    # ------------------------------------------------------------------
    def create_account(self, profile: Profile, public_keys: Dict[str, str],
                       password_verifier: Optional[PasswordVerifier]) -> AuthToken:
        body = {
            "email": profile.email,
            "displayName": profile.display_name,
            "wantsServerCustody": profile.wants_server_custody,
            "allowsAnalytics": profile.allows_analytics,
            "encryptionPublicKey": public_keys["encryption_public_key"],
            "signaturePublicKey": public_keys["signature_public_key"],
        }
        if password_verifier is not None:
            body["passwordSalt"] = password_verifier.salt
            body["passwordHash"] = password_verifier.hash
        data = self._request("POST", "/api/register/create_account", json=body)
        return self._token(schemas.parse(schemas.AuthTokenModel, data))

    def find_account(self, identifier: str) -> AccountRecord:
        data = self._request("POST", "/api/login", json={"username": identifier})
        login = schemas.parse(schemas.LoginResponse, data)
        return AccountRecord(
            auth_token=self._token(login.authToken),
            password_verifier=PasswordVerifier(salt=login.password.salt, hash=login.password.hash)
            if login.password else None,
            latest_backup=BackupBlob.from_dict(login.backup.model_dump()) if login.backup else None,
        )

    def save_backup(self, token: str, blob: BackupBlob) -> None:
        self._request("POST", "/api/backup", json={"token": token, **blob.to_dict()})

    def update_profile(self, token: str, **fields: Any) -> None:
        names = {
            "display_name": "displayName",
            "wants_server_custody": "wantsServerCustody",
            "allows_analytics": "allowsAnalytics",
            "password_salt": "passwordSalt",
            "password_hash": "passwordHash",
        }
        body = {"authToken": token}
        for name, value in fields.items():
            if name not in names:
                raise TransportPermanentError(f"unknown profile field {name}", status=400)
            body[names[name]] = value
        self._request("POST", "/api/user/update_profile", json=body)

    # ------------------------------------------------------------------
    # MessageTransport
    # ------------------------------------------------------------------
    def post_messages(self, token: str, messages: List[EncryptedMessage]) -> Dict[str, Any]:
        log.info(f"[HTTP PUB] messages={len(messages)}")
        data = self._request("POST", "/api/messages", json={
            "token": token,
            "messages": [m.to_dict(include_seq=False) for m in messages],
        })
        return schemas.parse(schemas.PostMessagesResponse, data).model_dump()

    def get_messages(self, token: str, cursor: Optional[int] = None) -> List[EncryptedMessage]:
        params = {"token": token}
        if cursor is not None:
            params["cursor"] = str(cursor)
        data = self._request("GET", "/api/messages", params=params)
        parsed = schemas.parse(schemas.MessagesResponse, data)
        return [EncryptedMessage.from_dict(m.model_dump()) for m in parsed.messages]

    # ------------------------------------------------------------------
    # RedemptionStore
    # ------------------------------------------------------------------
    def get_qr(self, qr_id: str) -> QRCodeRecord:
        data = self._request("GET", "/api/qr", params={"id": qr_id})
        qr = schemas.parse(schemas.QRCodeResponse, data)
        return QRCodeRecord(id=qr.id, item_id=qr.itemId, item_name=qr.itemName,
                            owner_encryption_public_key=qr.ownerEncryptionPublicKey)

    def atomic_redeem(self, token: str, qr_id: str) -> bool:
        data = self._request("POST", "/api/qr/redeem", json={"token": token, "id": qr_id},
                             conflict=ConflictFailure.ALREADY_REDEEMED)
        return schemas.parse(schemas.RedeemResponse, data).success

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------
    def lookup(self, chip_id_or_public_key: str) -> Optional[DirectoryEntry]:
        data = self._request("GET", "/api/directory", params={"key": chip_id_or_public_key})
        entry = schemas.parse(schemas.DirectoryResponse, data).entry
        if entry is None:
            return None
        if entry.type == "unbound":
            return UnboundChip(chip_id=entry.chipId or chip_id_or_public_key, kind=entry.kind)
        if entry.type == "person":
            return Person(id=entry.id, display_name=entry.displayName,
                          encryption_public_key=entry.encryptionPublicKey,
                          signature_public_key=entry.signaturePublicKey)
        return Location(id=entry.id, name=entry.name, signature_public_key=entry.signaturePublicKey,
                        description=entry.description, sponsor=entry.sponsor)

    def close(self) -> None:
        self._http.close()
