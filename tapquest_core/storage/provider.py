# tapquest_core/storage/provider.py
from __future__ import annotations
from typing import Any, Dict, List, Optional

from tapquest_core.state import LocalState
from tapquest_core.storage.models import AuditEvent


class StorageProvider:
    """
    Load/save capability for one device's LocalState.

    Besides the state itself a provider keeps an audit trail and a
    quarantine of server messages that failed verification, so a bad
    message is reported once rather than on every sync.
    """

    # state
    def load_state(self) -> Optional[LocalState]: ...
    def save_state(self, state: LocalState) -> None: ...
    def clear_state(self) -> None: ...

    # audit
    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None: ...
    def list_events(self) -> List[AuditEvent]: ...

    # quarantine of rejected messages
    def seen_msg(self, msg_id: str) -> bool: ...
    def mark_msg(self, msg_id: str) -> None: ...

    def close(self) -> None:
        return
