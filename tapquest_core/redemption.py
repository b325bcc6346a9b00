"""
tapquest_core.redemption
------------------------
At-most-once consumption of reward QR codes.

The store owns the compare-and-swap; this side only branches on its answer.
A non-success is terminal and never retried, and only success=True may
produce an item_redeemed record in the owner's activity log.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Optional

from .errors import ConflictFailure, TransportFailure
from .logger import get_logger
from .message import EncryptedMessage
from .message_log import MessageLog, item_redeemed_event
from .state import AuthToken, KeyPair
from .transport.transport_base import QRCodeRecord, RedemptionStore

log = get_logger("TapQuest.Redemption")


@dataclass(frozen=True)
class RedemptionResult:
    success: bool
    qr_id: str
    notified: bool = False  # item_redeemed message delivered to the owner

    def raise_for_conflict(self) -> None:
        if not self.success:
            raise ConflictFailure(ConflictFailure.ALREADY_REDEEMED, f"QR code {self.qr_id} already redeemed")


class RedemptionNullifier:
    def __init__(self, store: RedemptionStore, message_log: MessageLog):
        self.store = store
        self.message_log = message_log

    async def redeem(self, qr_id: str, auth_token: AuthToken, keys: Optional[KeyPair] = None) -> RedemptionResult:
        """
        One atomic redeem attempt. TransportFailure propagates; the caller
        decides whether to ask again, since a lost response may still have
        consumed the code.
        """
        qr = await asyncio.to_thread(self.store.get_qr, qr_id) if keys is not None else None
        try:
            success = await asyncio.to_thread(self.store.atomic_redeem, auth_token.value, qr_id)
        except ConflictFailure as e:
            # some servers answer a lost race with 409 instead of success=false
            if e.code != ConflictFailure.ALREADY_REDEEMED:
                raise
            success = False
        if not success:
            log.info(f"[REDEEM] {qr_id} already redeemed")
            return RedemptionResult(success=False, qr_id=qr_id)

        log.info(f"[REDEEM] {qr_id} redeemed")
        if qr is None:
            return RedemptionResult(success=True, qr_id=qr_id)

        notified = await self._notify_owner(qr, auth_token, keys)
        return RedemptionResult(success=True, qr_id=qr_id, notified=notified)

    async def _notify_owner(self, qr: QRCodeRecord, auth_token: AuthToken, keys: KeyPair) -> bool:
        event = item_redeemed_event(keys, qr.item_id, qr.item_name, qr.id, qr.owner_encryption_public_key)
        message: EncryptedMessage = self.message_log.append(event, qr.owner_encryption_public_key, keys)
        try:
            await self.message_log.post(auth_token.value, [message])
        except TransportFailure as e:
            # The code is already consumed; a lost notice does not undo that
            log.error(f"[REDEEM] failed to notify owner of {qr.id}: {e}")
            return False
        return True
