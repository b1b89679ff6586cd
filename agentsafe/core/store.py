"""
Action store - canonical record of queued actions and the governance audit trail.

Two implementations share one interface: an in-memory store (default) and a
SQLite store for restarts. Status writes are conditional on the status the
writer last saw (compare-and-set), so a stale writer can never overwrite a
terminal state. SQLite faults surface as StoreUnavailableError.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, Generator, List, Optional

from .errors import StoreUnavailableError
from .schema import ActionKind, ActionStatus, AuditEvent, QueuedAction, utcnow


class IActionStore(ABC):
    """Abstract interface for queued action persistence."""

    @abstractmethod
    def insert(self, action: QueuedAction) -> None:
        """Persist a newly queued action."""
        pass

    @abstractmethod
    def get(self, action_id: str) -> Optional[QueuedAction]:
        """Load an action by id, or None."""
        pass

    @abstractmethod
    def list(self, status: ActionStatus = None, kind: ActionKind = None) -> List[QueuedAction]:
        """List actions newest first, optionally filtered."""
        pass

    @abstractmethod
    def compare_and_set(self, action: QueuedAction, expected_status: ActionStatus) -> bool:
        """Write the action's mutable fields only if the stored status is still ``expected_status``."""
        pass

    @abstractmethod
    def add_event(self, actor: str, action: str, payload: Dict[str, Any]) -> None:
        """Append an audit event."""
        pass

    @abstractmethod
    def list_events(self, limit: int = 100) -> List[AuditEvent]:
        """Most recent audit events, newest first."""
        pass

    @abstractmethod
    def health_check(self) -> bool:
        """True if the store can serve reads."""
        pass


class InMemoryActionStore(IActionStore):
    """Process-local store. Returns copies so callers never alias stored records."""

    def __init__(self, max_audit_events: int = 1000):
        self._actions: Dict[str, QueuedAction] = {}
        self._events: Deque[AuditEvent] = deque(maxlen=max_audit_events)
        self._next_event_id = 1
        self._lock = threading.Lock()

    @staticmethod
    def _copy(action: QueuedAction) -> QueuedAction:
        return QueuedAction.from_dict(action.to_dict())

    def insert(self, action: QueuedAction) -> None:
        with self._lock:
            if action.id in self._actions:
                raise ValueError(f"Duplicate action id: {action.id}")
            self._actions[action.id] = self._copy(action)

    def get(self, action_id: str) -> Optional[QueuedAction]:
        with self._lock:
            action = self._actions.get(action_id)
            return self._copy(action) if action else None

    def list(self, status: ActionStatus = None, kind: ActionKind = None) -> List[QueuedAction]:
        with self._lock:
            actions = [
                self._copy(a) for a in reversed(list(self._actions.values()))
                if (status is None or a.status == status) and (kind is None or a.kind == kind)
            ]
        return sorted(actions, key=lambda a: a.created_at, reverse=True)

    def compare_and_set(self, action: QueuedAction, expected_status: ActionStatus) -> bool:
        with self._lock:
            current = self._actions.get(action.id)
            if current is None or current.status != expected_status:
                return False
            self._actions[action.id] = self._copy(action)
            return True

    def add_event(self, actor: str, action: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._events.appendleft(AuditEvent(
                id=self._next_event_id,
                ts=utcnow(),
                actor=actor,
                action=action,
                payload=dict(payload),
            ))
            self._next_event_id += 1

    def list_events(self, limit: int = 100) -> List[AuditEvent]:
        if limit <= 0:
            return []
        with self._lock:
            return list(self._events)[:limit]

    def health_check(self) -> bool:
        return True


class SqliteActionStore(IActionStore):
    """SQLite-backed store; one short-lived connection per operation."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    @contextmanager
    def get_db(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a SQLite database connection, translating driver faults."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=5.0)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open action store: {e}")
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreUnavailableError(f"Action store operation failed: {e}")
        finally:
            conn.close()

    def init_db(self):
        """Initialize the database with required tables."""
        with self.get_db() as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS actions (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    cost_usd REAL NOT NULL,
                    run_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    execute_after TEXT NOT NULL,
                    status TEXT NOT NULL,
                    updated_at TEXT,
                    vetoed_at TEXT,
                    veto_reason TEXT,
                    executed_at TEXT,
                    execution_receipt TEXT,
                    tx_hash TEXT
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS audit_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    action TEXT NOT NULL,
                    payload TEXT
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_actions_status_created ON actions(status, created_at DESC)')

            conn.commit()

    @staticmethod
    def _row_to_action(row: sqlite3.Row) -> QueuedAction:
        data = dict(row)
        data['payload'] = json.loads(data['payload'])
        return QueuedAction.from_dict(data)

    def insert(self, action: QueuedAction) -> None:
        data = action.to_dict()
        data['payload'] = json.dumps(data['payload'], sort_keys=True, default=str)
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" for _ in data)

        with self.get_db() as conn:
            conn.execute(f"INSERT INTO actions ({columns}) VALUES ({placeholders})", tuple(data.values()))
            conn.commit()

    def get(self, action_id: str) -> Optional[QueuedAction]:
        with self.get_db() as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute("SELECT * FROM actions WHERE id = ?", (action_id,)).fetchone()
            return self._row_to_action(row) if row else None

    def list(self, status: ActionStatus = None, kind: ActionKind = None) -> List[QueuedAction]:
        query = "SELECT * FROM actions"
        clauses = []
        params = []
        if status is not None:
            clauses.append("status = ?")
            params.append(ActionStatus(status).value)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(ActionKind(kind).value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"

        with self.get_db() as conn:
            conn.row_factory = sqlite3.Row
            return [self._row_to_action(row) for row in conn.execute(query, params).fetchall()]

    def compare_and_set(self, action: QueuedAction, expected_status: ActionStatus) -> bool:
        data = action.to_dict()
        with self.get_db() as conn:
            cursor = conn.execute(
                '''
                UPDATE actions
                SET status = ?, updated_at = ?, vetoed_at = ?, veto_reason = ?,
                    executed_at = ?, execution_receipt = ?, tx_hash = ?
                WHERE id = ? AND status = ?
                ''',
                (data['status'], data['updated_at'], data['vetoed_at'], data['veto_reason'],
                 data['executed_at'], data['execution_receipt'], data['tx_hash'],
                 action.id, ActionStatus(expected_status).value)
            )
            conn.commit()
            return cursor.rowcount == 1

    def add_event(self, actor: str, action: str, payload: Dict[str, Any]) -> None:
        with self.get_db() as conn:
            conn.execute(
                "INSERT INTO audit_events (ts, actor, action, payload) VALUES (?, ?, ?, ?)",
                (utcnow().isoformat(), actor, action, json.dumps(payload, default=str))
            )
            conn.commit()

    def list_events(self, limit: int = 100) -> List[AuditEvent]:
        if limit <= 0:
            return []
        with self.get_db() as conn:
            rows = conn.execute(
                "SELECT id, ts, actor, action, payload FROM audit_events ORDER BY id DESC LIMIT ?",
                (limit,)
            ).fetchall()

        events = []
        for event_id, ts, actor, action, payload in rows:
            try:
                parsed_payload = json.loads(payload) if payload else {}
            except (json.JSONDecodeError, ValueError):
                parsed_payload = {"raw_data": payload}
            events.append(AuditEvent(
                id=event_id,
                ts=datetime.fromisoformat(ts),
                actor=actor,
                action=action,
                payload=parsed_payload,
            ))
        return events

    def health_check(self) -> bool:
        """Check database health."""
        try:
            with self.get_db() as conn:
                tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
                return {"actions", "audit_events"} <= tables
        except StoreUnavailableError:
            return False
