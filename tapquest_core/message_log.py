"""
tapquest_core.message_log
-------------------------
The append-only, self-encrypted activity log ("jubSignal").

Each ActivityEvent is sealed to a recipient (the user's own key for personal
entries, a peer's key for exchanges), signed by the sender and relayed by the
server. sync() reconciles local state with the server's message list:

- post any outgoing messages, then fetch from the last applied cursor
  (or everything on force_refresh)
- verify, decrypt and fold each message; a bad message is skipped and
  reported, the rest still fold
- fold keys on event id and orders by (timestamp, id), so replaying or
  reordering deliveries converges to the same log

Derived views (location signatures, peers, redeemed items) are recomputed
from the ordered log, never incremented in place.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from cryptography.exceptions import InvalidTag

from .constants import (
    KIND_ITEM_REDEEMED,
    KIND_LOCATION_TAP,
    KIND_PERSON_TAP,
    KIND_REGISTERED,
    SELF_ONLY_KINDS,
)
from .crypto import ed25519_sign, ed25519_verify, open_json, seal_json
from .errors import VerificationFailure
from .logger import get_logger
from .message import ActivityEvent, EncryptedMessage
from .state import KeyPair, LocalState, LocationSignature, PeerRecord
from .storage.provider import StorageProvider
from .transport.transport_base import MessageTransport
from .utils import b64d, b64e

log = get_logger("TapQuest.MessageLog")


@dataclass
class SyncReport:
    fetched: int = 0
    posted: int = 0
    applied: List[str] = field(default_factory=list)      # event ids, in fold order
    duplicates: List[str] = field(default_factory=list)
    rejected: List[Tuple[Optional[int], str]] = field(default_factory=list)  # (seq, reason)
    quarantined: int = 0
    cursor: Optional[int] = None

    @property
    def ok(self) -> bool:
        return not self.rejected


# ---------------------------------------------------------------------------
# Event builders
# ---------------------------------------------------------------------------
def registered_event(keys: KeyPair, display_name: str) -> ActivityEvent:
    return ActivityEvent(
        kind=KIND_REGISTERED,
        payload={"display_name": display_name},
        sender_public_key=keys.encryption_public_key,
        recipient_public_key=keys.encryption_public_key,
    )


def location_tap_event(keys: KeyPair, location_id: str, location_name: str, signature_public_key: str,
                       signature_message: str, signature: str) -> ActivityEvent:
    return ActivityEvent(
        kind=KIND_LOCATION_TAP,
        payload={
            "location_id": location_id,
            "location_name": location_name,
            "signature_public_key": signature_public_key,
            "signature_message": signature_message,
            "signature": signature,
        },
        sender_public_key=keys.encryption_public_key,
        recipient_public_key=keys.encryption_public_key,
    )


def person_tap_event(keys: KeyPair, person_id: str, display_name: str, encryption_public_key: str,
                     signature_public_key: str) -> ActivityEvent:
    return ActivityEvent(
        kind=KIND_PERSON_TAP,
        payload={
            "person_id": person_id,
            "display_name": display_name,
            "encryption_public_key": encryption_public_key,
            "signature_public_key": signature_public_key,
        },
        sender_public_key=keys.encryption_public_key,
        recipient_public_key=keys.encryption_public_key,
    )


def item_redeemed_event(keys: KeyPair, item_id: str, item_name: str, qr_code_id: str,
                        recipient_public_key: str) -> ActivityEvent:
    return ActivityEvent(
        kind=KIND_ITEM_REDEEMED,
        payload={"item_id": item_id, "item_name": item_name, "qr_code_id": qr_code_id},
        sender_public_key=keys.encryption_public_key,
        recipient_public_key=recipient_public_key,
    )


# ---------------------------------------------------------------------------
# Fold
# ---------------------------------------------------------------------------
def derive_views(events: Sequence[ActivityEvent]):
    """Location signatures, peers and redeemed items implied by an ordered log."""
    signatures: Dict[str, LocationSignature] = {}
    users: Dict[str, PeerRecord] = {}
    redeemed: Dict[str, dict] = {}

    for event in events:
        p = event.payload
        if event.kind == KIND_LOCATION_TAP:
            # first visit wins; later ones are duplicate visits
            if p["location_id"] not in signatures:
                signatures[p["location_id"]] = LocationSignature(
                    sig=p["signature"], msg=p["signature_message"], timestamp=event.timestamp)
        elif event.kind == KIND_PERSON_TAP:
            peer = users.get(p["person_id"])
            if peer is None:
                peer = users[p["person_id"]] = PeerRecord(
                    id=p["person_id"],
                    display_name=p["display_name"],
                    encryption_public_key=p["encryption_public_key"],
                    signature_public_key=p["signature_public_key"],
                )
            peer.display_name = p["display_name"]
            peer.tap_count += 1
            peer.tapped_at = event.timestamp
        elif event.kind == KIND_ITEM_REDEEMED:
            redeemed.setdefault(p["qr_code_id"], {
                "item_id": p["item_id"],
                "item_name": p["item_name"],
                "timestamp": event.timestamp,
            })
        elif event.kind == KIND_REGISTERED:
            pass

    return signatures, users, redeemed


def fold(state: LocalState, events: Iterable[ActivityEvent]) -> Tuple[LocalState, List[str], List[str]]:
    """
    Fold events into a copy of state, strictly by ascending (timestamp, id).

    Returns (new_state, applied_ids, duplicate_ids). Ids already in the log
    are skipped, so folding the same event twice is a no-op.
    """
    new_state = state.copy()
    applied: List[str] = []
    duplicates: List[str] = []

    for event in sorted(events, key=lambda e: e.order_key):
        if event.id in new_state.activity_log:
            duplicates.append(event.id)
            continue
        new_state.activity_log[event.id] = event
        applied.append(event.id)

    if applied:
        ordered = new_state.ordered_activities()
        new_state.activity_log = {e.id: e for e in ordered}
        sigs, users, redeemed = derive_views(ordered)
        new_state.location_signatures = sigs
        new_state.users = users
        new_state.redeemed_items = redeemed

    return new_state, applied, duplicates


# ---------------------------------------------------------------------------
# Log
# ---------------------------------------------------------------------------
class MessageLog:
    def __init__(self, transport: MessageTransport, storage: Optional[StorageProvider] = None):
        self.transport = transport
        self.storage = storage

    def append(self, event: ActivityEvent, recipient_public_key: str, sender_keys: KeyPair) -> EncryptedMessage:
        """Seal and sign an event for recipient_public_key. Nothing is sent."""
        if event.recipient_public_key != recipient_public_key:
            raise ValueError("event recipient does not match the sealing key")
        msg = EncryptedMessage(
            sender_public_key=sender_keys.encryption_public_key,
            sender_signature_public_key=sender_keys.signature_public_key,
            recipient_public_key=recipient_public_key,
        )
        sealed = seal_json(event.to_dict(), sender_keys.encryption_private_bytes(),
                           b64d(recipient_public_key), aad_fields=msg.aad_fields())
        msg.nonce = sealed["nonce"]
        msg.ciphertext = sealed["ciphertext"]
        msg.sig = b64e(ed25519_sign(sender_keys.signature_private_bytes(), msg.to_signing_bytes()))
        return msg

    def open(self, message: EncryptedMessage, keys: KeyPair) -> ActivityEvent:
        """Verify and decrypt one message. Raises VerificationFailure."""
        if not message.sig:
            raise VerificationFailure("unsigned message")
        try:
            sig_ok = ed25519_verify(b64d(message.sender_signature_public_key), b64d(message.sig),
                                    message.to_signing_bytes())
        except ValueError:
            sig_ok = False
        if not sig_ok:
            raise VerificationFailure("bad signature")
        if message.recipient_public_key != keys.encryption_public_key:
            raise VerificationFailure("message not addressed to this account")

        try:
            payload = open_json({"nonce": message.nonce, "ciphertext": message.ciphertext},
                                keys.encryption_private_bytes(), b64d(message.sender_public_key),
                                aad_fields=message.aad_fields())
        except (InvalidTag, ValueError) as e:
            raise VerificationFailure(f"undecryptable: {type(e).__name__}")

        try:
            event = ActivityEvent.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise VerificationFailure(f"malformed event: {e}")

        if event.sender_public_key != message.sender_public_key or \
                event.recipient_public_key != message.recipient_public_key:
            raise VerificationFailure("event addressing does not match envelope")
        if event.kind in SELF_ONLY_KINDS and (
                message.sender_public_key != keys.encryption_public_key
                or message.sender_signature_public_key != keys.signature_public_key):
            raise VerificationFailure(f"{event.kind} from another account")
        return event

    async def post(self, token: str, messages: List[EncryptedMessage]) -> dict:
        if not messages:
            return {"accepted": 0, "seqs": []}
        return await asyncio.to_thread(self.transport.post_messages, token, list(messages))

    async def sync(self, state: LocalState, force_refresh: bool = False,
                   outgoing: Sequence[EncryptedMessage] = ()) -> Tuple[LocalState, SyncReport]:
        """
        Post outgoing messages, then fetch and fold.

        TransportFailure propagates untouched; per-message failures land in
        SyncReport.rejected. The caller must hold the session lock.
        """
        if state.auth_token is None or state.keys is None:
            raise ValueError("sync requires an auth token and keys")
        token = state.auth_token.value
        report = SyncReport()

        ack = await self.post(token, list(outgoing))
        report.posted = ack.get("accepted", 0)

        cursor = None if force_refresh else state.message_cursor
        messages = await asyncio.to_thread(self.transport.get_messages, token, cursor)
        report.fetched = len(messages)

        events: List[ActivityEvent] = []
        new_cursor = state.message_cursor
        for msg in messages:
            if msg.seq is not None:
                new_cursor = msg.seq if new_cursor is None else max(new_cursor, msg.seq)
            # no seq and no signature means nothing stable to quarantine by
            qid = str(msg.seq) if msg.seq is not None else msg.sig
            if self.storage is not None and qid and self.storage.seen_msg(qid):
                report.quarantined += 1
                continue
            try:
                events.append(self.open(msg, state.keys))
            except VerificationFailure as e:
                log.warning(f"[SYNC] skipping message seq={msg.seq}: {e}")
                report.rejected.append((msg.seq, str(e)))
                if self.storage is not None:
                    if qid:
                        self.storage.mark_msg(qid)
                    self.storage.log_event("message_rejected", {"seq": msg.seq, "reason": str(e)})

        new_state, applied, duplicates = fold(state, events)
        new_state.message_cursor = new_cursor
        report.applied = applied
        report.duplicates = duplicates
        report.cursor = new_cursor
        log.info(f"[SYNC] fetched={report.fetched} applied={len(applied)} "
                 f"duplicates={len(duplicates)} rejected={len(report.rejected)} cursor={new_cursor}")
        return new_state, report
