"""
Storage — flat key-value records and the run recorder.

KeyValueStore is the storage collaborator: items are flat JSON records keyed
by (pk, sk), queryable by partition and sort-key range.

RunRecorder writes what a finished Agent Loop hands back. It is only ever
called after loop termination, never mid-loop.

Partitions:
  TRANSCRIPT#<team_id>   one item per run, sk = <started_at>#<run_id>
  COST#<yyyy-mm-dd>      one item per model call
  AUDIT                  append-only, hash-chained audit events

Behavioral Contract (AUDIT):
- Append-only. No event is ever modified or deleted.
- Each event is hashed and chained to the previous one (tamper-evident).
"""

import hashlib
import json
import sqlite3
import threading
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from agent_kernel.models.loop import CostRecord, LoopResult
from agent_kernel.models.storage import AuditEvent

AUDIT_PARTITION = "AUDIT"


def transcript_partition(team_id: str) -> str:
    return f"TRANSCRIPT#{team_id}"


def cost_partition(day: str) -> str:
    return f"COST#{day}"


class KeyValueStore:
    """
    Flat item store.
    Prototype: SQLite. Production: any store with range queries on a sort key.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS items (
                    pk TEXT NOT NULL,
                    sk TEXT NOT NULL,
                    item_json TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (datetime('now')),
                    PRIMARY KEY (pk, sk)
                )
            """)
            self._conn.commit()

    def put(self, item: dict) -> dict:
        """Insert or replace an item. It must carry string `pk` and `sk` keys."""
        pk, sk = item.get("pk"), item.get("sk")
        if not isinstance(pk, str) or not isinstance(sk, str):
            raise ValueError("Items need string 'pk' and 'sk' keys")

        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO items (pk, sk, item_json) VALUES (?, ?, ?)",
                (pk, sk, json.dumps(item, default=str)),
            )
            self._conn.commit()
        return item

    def get(self, pk: str, sk: str) -> Optional[dict]:
        with self._lock:
            row = self._conn.execute(
                "SELECT item_json FROM items WHERE pk = ? AND sk = ?", (pk, sk)
            ).fetchone()
        return json.loads(row["item_json"]) if row else None

    def query(
        self,
        partition: str,
        sk_from: Optional[str] = None,
        sk_to: Optional[str] = None,
        limit: Optional[int] = None,
        descending: bool = False,
    ) -> List[dict]:
        """Items of one partition, ordered by sort key, optionally within [sk_from, sk_to]."""
        sql = "SELECT item_json FROM items WHERE pk = ?"
        params: list = [partition]
        if sk_from is not None:
            sql += " AND sk >= ?"
            params.append(sk_from)
        if sk_to is not None:
            sql += " AND sk <= ?"
            params.append(sk_to)
        sql += " ORDER BY sk DESC" if descending else " ORDER BY sk"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [json.loads(r["item_json"]) for r in rows]

    def count(self, partition: Optional[str] = None) -> int:
        with self._lock:
            if partition is None:
                row = self._conn.execute("SELECT COUNT(*) AS cnt FROM items").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) AS cnt FROM items WHERE pk = ?", (partition,)
                ).fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()


def _sign(event: AuditEvent) -> str:
    event_dict = event.model_dump(mode="json")
    # Zero out signature before hashing (it's what we're computing)
    event_dict["signature"] = ""
    event_bytes = json.dumps(event_dict, sort_keys=True, default=str).encode()
    return hashlib.sha256(event_bytes).hexdigest()


class RunRecorder:
    """Persists finished runs and audit events through a KeyValueStore."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv
        self._audit_lock = threading.Lock()

    def record_run(self, result: LoopResult) -> None:
        """Write transcript, cost records and an audit event for a terminated loop."""
        self.kv.put({
            "pk": transcript_partition(result.team_id),
            "sk": f"{result.started_at.isoformat()}#{result.run_id}",
            "type": "transcript",
            **result.model_dump(mode="json", exclude={"cost_records"}),
        })

        for record in result.cost_records:
            self.record_cost(record, result.run_id)

        self.append_audit(
            action="agent_loop_finished",
            team_id=result.team_id,
            actor="agent_loop",
            success=result.status.value == "completed",
            details={
                "run_id": result.run_id,
                "status": result.status.value,
                "iterations": result.iterations,
                "tool_calls": len(result.tool_calls),
                "total_cost": result.usage.total_cost,
                "reason": result.reason,
            },
        )

    def record_cost(self, record: CostRecord, run_id: str) -> None:
        day = record.recorded_at.strftime("%Y-%m-%d")
        self.kv.put({
            "pk": cost_partition(day),
            "sk": f"{record.recorded_at.isoformat()}#{run_id}#{record.iteration:03d}",
            "type": "cost",
            "run_id": run_id,
            **record.model_dump(mode="json"),
        })

    def append_audit(
        self,
        action: str,
        team_id: Optional[str] = None,
        actor: str = "system",
        success: bool = True,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        """Append a hash-chained audit event."""
        with self._audit_lock:
            latest = self.kv.query(AUDIT_PARTITION, limit=1, descending=True)
            sequence = latest[0]["sequence"] + 1 if latest else 1

            event = AuditEvent(
                id=f"audit_{uuid4().hex[:12]}",
                action=action,
                team_id=team_id,
                actor=actor,
                success=success,
                details=details or {},
                created_at=datetime.utcnow(),
                prior_event_hash=latest[0]["signature"] if latest else None,
            )
            event.signature = _sign(event)

            self.kv.put({
                "pk": AUDIT_PARTITION,
                "sk": f"{sequence:012d}",
                "sequence": sequence,
                **event.model_dump(mode="json"),
            })
        return event

    def audit_events(self, limit: int = 50) -> List[AuditEvent]:
        items = self.kv.query(AUDIT_PARTITION, limit=limit, descending=True)
        return [AuditEvent.model_validate(self._event_fields(i)) for i in reversed(items)]

    def transcripts(self, team_id: str, limit: int = 20) -> List[dict]:
        return self.kv.query(transcript_partition(team_id), limit=limit, descending=True)

    def costs_for_day(self, day: str) -> List[dict]:
        return self.kv.query(cost_partition(day))

    def verify_audit_chain(self) -> bool:
        """Verify no audit event has been tampered with."""
        items = self.kv.query(AUDIT_PARTITION)
        prior_signature = None
        for item in items:
            event = AuditEvent.model_validate(self._event_fields(item))
            if event.signature != _sign(event):
                return False
            if event.prior_event_hash != prior_signature:
                return False
            prior_signature = event.signature
        return True

    @staticmethod
    def _event_fields(item: dict) -> dict:
        return {k: v for k, v in item.items() if k not in ("pk", "sk", "sequence")}
