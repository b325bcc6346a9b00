# tapquest_core/storage/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class AuditEvent:
    """
    Storage-level record of something the session did (login, sync report,
    rollback). Storage-agnostic; every provider returns these from list_events().
    """
    ts: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
