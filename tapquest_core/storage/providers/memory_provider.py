from typing import Optional, Dict, Any, List
from tapquest_core.state import LocalState
from tapquest_core.storage.models import AuditEvent
from tapquest_core.storage.provider import StorageProvider
from tapquest_core.utils import now_ts


class InMemoryStorage(StorageProvider):
    def __init__(self):
        self.state: Optional[dict] = None
        self.audit: List[AuditEvent] = []
        self.quarantine = set()

    # state is kept serialized so callers never share a live object with storage
    def load_state(self) -> Optional[LocalState]:
        if self.state is None:
            return None
        return LocalState.from_dict(self.state)

    def save_state(self, state: LocalState) -> None:
        self.state = state.to_dict()

    def clear_state(self) -> None:
        self.state = None

    # audit
    def log_event(self, event_type: str, payload: Dict[str, Any]):
        self.audit.append(AuditEvent(ts=now_ts(), event_type=event_type, payload=dict(payload)))

    def list_events(self) -> List[AuditEvent]:
        return list(self.audit)

    # quarantine
    def seen_msg(self, msg_id: str) -> bool:
        return msg_id in self.quarantine

    def mark_msg(self, msg_id: str):
        self.quarantine.add(msg_id)
