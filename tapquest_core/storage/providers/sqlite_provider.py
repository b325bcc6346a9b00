from __future__ import annotations
from typing import Optional, Dict, Any, List
import json, sqlite3, os, threading
from tapquest_core.state import LocalState
from tapquest_core.storage.models import AuditEvent
from tapquest_core.storage.provider import StorageProvider
from tapquest_core.utils import now_ts


class SQLiteStorage(StorageProvider):
    def __init__(self, path="db/tapquest_state.db"):
        # If no directory, default to current working directory
        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)
        # Sessions hand storage calls to worker threads
        self.db = sqlite3.connect(path, check_same_thread=False)
        self._lock = threading.Lock()

        self._init()

    def _init(self) -> None:
        c = self.db.cursor()

        c.execute("""CREATE TABLE IF NOT EXISTS local_state(
            slot INTEGER PRIMARY KEY CHECK (slot = 0),
            data TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )""")
        c.execute("""CREATE TABLE IF NOT EXISTS audit(
            ts TEXT,
            event_type TEXT,
            payload TEXT
        )""")
        c.execute("""CREATE TABLE IF NOT EXISTS quarantine(
            msg_id TEXT PRIMARY KEY
        )""")

        self.db.commit()

    # --- state ---

    def load_state(self) -> Optional[LocalState]:
        with self._lock:
            row = self.db.execute("SELECT data FROM local_state WHERE slot=0").fetchone()
        if not row:
            return None
        return LocalState.from_dict(json.loads(row[0]))

    def save_state(self, state: LocalState) -> None:
        data = json.dumps(state.to_dict(), separators=(",", ":"), sort_keys=True)
        with self._lock:
            self.db.execute(
                "INSERT INTO local_state(slot,data,updated_at) VALUES(0,?,?) "
                "ON CONFLICT(slot) DO UPDATE SET data=excluded.data, updated_at=excluded.updated_at",
                (data, now_ts()),
            )
            self.db.commit()

    def clear_state(self) -> None:
        with self._lock:
            self.db.execute("DELETE FROM local_state")
            self.db.commit()

    # --- audit ---

    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.db.execute("INSERT INTO audit(ts,event_type,payload) VALUES(?,?,?)",
                            (now_ts(), event_type, json.dumps(payload, separators=(",", ":"), sort_keys=True)))
            self.db.commit()

    def list_events(self) -> List[AuditEvent]:
        with self._lock:
            rows = self.db.execute("SELECT ts,event_type,payload FROM audit ORDER BY rowid").fetchall()
        return [AuditEvent(ts=ts, event_type=et, payload=json.loads(p)) for ts, et, p in rows]

    # --- quarantine ---

    def seen_msg(self, msg_id: str) -> bool:
        with self._lock:
            cur = self.db.execute("SELECT 1 FROM quarantine WHERE msg_id=?", (msg_id,))
            return cur.fetchone() is not None

    def mark_msg(self, msg_id: str) -> None:
        with self._lock:
            self.db.execute("INSERT OR IGNORE INTO quarantine(msg_id) VALUES(?)", (msg_id,))
            self.db.commit()

    def close(self):
        self.db.close()
