"""
tapquest_core.session
---------------------
One logical session actor per device.

The session owns the LocalState value and a single asyncio.Lock. Every
fold, and every read-then-append sequence (classify a tap, check the cached
location signature, append the visit), runs under that lock, so concurrent
sync/append calls never interleave folds or move the cursor twice.

Blocking collaborators (transport, scrypt) run on worker threads.
"""

from __future__ import annotations
import asyncio
from typing import Any, Dict, Mapping, Optional

from .backup import BackupBlob, BackupCodec
from .chip import ChipAuthenticator
from .config import Settings
from .directory import Directory, InMemoryDirectory
from .errors import (
    AuthenticationFailure,
    ConflictFailure,
    FatalRegistrationFailure,
    NotLoggedIn,
    TransportFailure,
)
from .logger import get_logger
from .message_log import (
    MessageLog,
    SyncReport,
    location_tap_event,
    person_tap_event,
    registered_event,
)
from .redemption import RedemptionNullifier, RedemptionResult
from .signatures import SignatureVerifier
from .state import KeyPair, LocalState, Profile, is_valid_display_name
from .storage import StorageProvider, load_storage_provider
from .tap import TapOutcome, TapPayload, TapStateMachine, ValidLocation, ValidPerson
from .transport import BaseTransport, transport_factory

log = get_logger("TapQuest.Session")


class Session:
    def __init__(self, transport: BaseTransport, directory: Directory, storage: StorageProvider,
                 verifier: Optional[SignatureVerifier] = None, codec: Optional[BackupCodec] = None):
        self.transport = transport
        self.storage = storage
        self.codec = codec or BackupCodec()
        self.message_log = MessageLog(transport, storage)
        self.tap_machine = TapStateMachine(verifier or SignatureVerifier(), directory)
        self.nullifier = RedemptionNullifier(transport, self.message_log)
        self._lock = asyncio.Lock()
        self._state = storage.load_state() or LocalState()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, directory: Optional[Directory] = None,
                      chip_authenticator: Optional[ChipAuthenticator] = None) -> "Session":
        settings = settings or Settings.from_env()
        transport = transport_factory(settings)
        if directory is None:
            directory = transport if isinstance(transport, Directory) else InMemoryDirectory()
        storage = load_storage_provider({"provider": settings.storage_provider, "sqlite_path": settings.db_path})
        verifier = SignatureVerifier(chip_authenticator=chip_authenticator,
                                     allow_mock_refs=settings.allow_mock_refs)
        return cls(transport, directory, storage, verifier, BackupCodec.from_settings(settings))

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------
    @property
    def state(self) -> LocalState:
        return self._state

    def _commit(self, new_state: LocalState) -> None:
        self._state = new_state
        self.storage.save_state(new_state)

    def _require_login(self) -> LocalState:
        state = self._state
        if not state.logged_in:
            raise NotLoggedIn("you must be logged in")
        return state

    def logout(self) -> None:
        self._state = LocalState()
        self.storage.clear_state()

    def close(self) -> None:
        self.transport.close()
        self.storage.close()

    # ------------------------------------------------------------------
    # registration / login
    # ------------------------------------------------------------------
    async def register(self, email: str, display_name: str, password: Optional[str] = None,
                       wants_server_custody: bool = False, allows_analytics: bool = False) -> SyncReport:
        if not is_valid_display_name(display_name):
            raise ValueError("Invalid display name. Must be alphanumeric and less than 20 characters")
        if not wants_server_custody and not password:
            raise ValueError("a password is required unless the server holds the backup")

        keys = KeyPair.generate()
        verifier = await asyncio.to_thread(self.codec.make_password_verifier, password) if password else None
        profile = Profile(
            display_name=display_name,
            email=email,
            encryption_public_key=keys.encryption_public_key,
            signature_public_key=keys.signature_public_key,
            wants_server_custody=wants_server_custody,
            allows_analytics=allows_analytics,
        )
        token = await asyncio.to_thread(self.transport.create_account, profile, keys.public_keys(), verifier)

        async with self._lock:
            self._commit(LocalState(auth_token=token, keys=keys, profile=profile))
            first = self.message_log.append(registered_event(keys, display_name), keys.encryption_public_key, keys)
            try:
                new_state, report = await self.message_log.sync(self._state, outgoing=[first])
            except TransportFailure as e:
                log.error(f"[REGISTER] first message undeliverable, rolling back: {e}")
                self.logout()
                self.storage.log_event("registration_rolled_back", {"email": email, "error": str(e)})
                raise FatalRegistrationFailure("could not deliver the registration message") from e
            self._commit(new_state)

        await self.backup(password)
        self.storage.log_event("registered", {"email": email})
        return report

    async def login(self, email: str, password: Optional[str] = None) -> SyncReport:
        record = await asyncio.to_thread(self.transport.find_account, email)
        blob = record.latest_backup
        if blob is None:
            raise AuthenticationFailure("no backup found for this account")

        if not blob.custodial:
            if not password:
                raise AuthenticationFailure("password required")
            if record.password_verifier is not None:
                ok = await asyncio.to_thread(self.codec.check_password, password, record.password_verifier)
                if not ok:
                    raise AuthenticationFailure("incorrect password")

        state = await asyncio.to_thread(self.codec.load_backup, blob, email, password, record.auth_token)

        async with self._lock:
            self._commit(state)
            try:
                new_state, report = await self.message_log.sync(self._state, force_refresh=True)
            except TransportFailure:
                self.logout()
                raise
            self._commit(new_state)

        self.storage.log_event("login", {"email": email, "applied": len(report.applied)})
        return report

    # ------------------------------------------------------------------
    # log
    # ------------------------------------------------------------------
    async def sync(self, force_refresh: bool = False) -> SyncReport:
        self._require_login()
        async with self._lock:
            new_state, report = await self.message_log.sync(self._state, force_refresh=force_refresh)
            self._commit(new_state)
        if report.rejected:
            self.storage.log_event("sync_partial", {"rejected": [[s, r] for s, r in report.rejected]})
        return report

    async def backup(self, password: Optional[str] = None) -> BackupBlob:
        state = self._require_login()
        blob = await asyncio.to_thread(
            self.codec.create_backup, state, state.profile.wants_server_custody, password)
        await asyncio.to_thread(self.transport.save_backup, state.auth_token.value, blob)
        return blob

    # ------------------------------------------------------------------
    # taps
    # ------------------------------------------------------------------
    async def tap_cmac(self, raw_params: Mapping[str, str]) -> TapOutcome:
        async with self._lock:
            outcome = await asyncio.to_thread(
                self.tap_machine.classify_cmac, raw_params, dict(self._state.location_signatures))
            await self._record(outcome)
        return outcome

    async def tap(self, payload: TapPayload) -> TapOutcome:
        async with self._lock:
            outcome = await asyncio.to_thread(
                self.tap_machine.classify, payload, dict(self._state.location_signatures))
            await self._record(outcome)
        return outcome

    async def record_tap(self, outcome: TapOutcome) -> SyncReport:
        """Record a classified tap after the fact, e.g. once the user has logged in."""
        self._require_login()
        async with self._lock:
            if isinstance(outcome, ValidLocation) and outcome.location.id in self._state.location_signatures:
                raise ConflictFailure(ConflictFailure.ALREADY_VISITED, "you have already visited this location")
            report = await self._record(outcome)
        if report is None:
            raise ValueError(f"nothing to record for {outcome.code.value}")
        return report

    async def _record(self, outcome: TapOutcome) -> Optional[SyncReport]:
        # caller holds the lock
        state = self._state
        if not state.logged_in:
            return None
        keys = state.keys

        if isinstance(outcome, ValidPerson):
            p = outcome.person
            event = person_tap_event(keys, p.id, p.display_name, p.encryption_public_key, p.signature_public_key)
        elif isinstance(outcome, ValidLocation):
            if outcome.already_visited:
                return None
            tap = outcome.fresh_tap
            if tap is None:
                log.warning(f"[TAP] location {outcome.location.id} produced no signature to record")
                return None
            event = location_tap_event(keys, tap.location_id, tap.name, tap.signature_public_key,
                                       tap.signature_message, tap.signature)
        else:
            return None

        message = self.message_log.append(event, keys.encryption_public_key, keys)
        new_state, report = await self.message_log.sync(state, outgoing=[message])
        self._commit(new_state)
        return report

    # ------------------------------------------------------------------
    # redemption / profile
    # ------------------------------------------------------------------
    async def redeem(self, qr_id: str) -> RedemptionResult:
        state = self._require_login()
        return await self.nullifier.redeem(qr_id, state.auth_token, state.keys)

    async def update_profile(self, display_name: Optional[str] = None,
                             wants_server_custody: Optional[bool] = None,
                             allows_analytics: Optional[bool] = None,
                             password: Optional[str] = None) -> Profile:
        state = self._require_login()
        if display_name is not None and not is_valid_display_name(display_name):
            raise ValueError("Invalid display name. Must be alphanumeric and less than 20 characters")
        if wants_server_custody is False and not password:
            raise ValueError("a password is required to leave server custody")

        fields: Dict[str, Any] = {}
        if display_name is not None:
            fields["display_name"] = display_name
        if wants_server_custody is not None:
            fields["wants_server_custody"] = wants_server_custody
        if allows_analytics is not None:
            fields["allows_analytics"] = allows_analytics
        if password:
            verifier = await asyncio.to_thread(self.codec.make_password_verifier, password)
            fields["password_salt"] = verifier.salt
            fields["password_hash"] = verifier.hash

        await asyncio.to_thread(self.transport.update_profile, state.auth_token.value, **fields)

        async with self._lock:
            new_state = self._state.copy()
            for name in ("display_name", "wants_server_custody", "allows_analytics"):
                if name in fields:
                    setattr(new_state.profile, name, fields[name])
            self._commit(new_state)

        if wants_server_custody is not None or password:
            await self.backup(password)
        return self._state.profile
