from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from .core import SnapshotDescriptor, parse_snapshot
from .engine import Database, XidEventKind

logger = logging.getLogger(__name__)


def snapshot_after_commit(
    committed_xid: int,
    in_flight: Iterable[int],
    latest_completed: Optional[int] = None,
) -> SnapshotDescriptor:
    """
    Snapshot describing the database just after `committed_xid` became visible.

    `latest_completed` is the highest xid known to have committed earlier; commits
    are not ordered by xid, so it may exceed `committed_xid`.
    """
    running = set(in_flight)
    running.discard(committed_xid)
    candidates = [committed_xid, *running]
    if latest_completed is not None:
        candidates.append(latest_completed)
    xmax = max(candidates) + 1
    xmin = min(running) if running else xmax
    xip = tuple(sorted(x for x in running if xmin <= x < xmax))
    return SnapshotDescriptor(xmin=xmin, xmax=xmax, xip=xip)


@dataclass(frozen=True)
class CommitRecord:
    seq: int
    xid: int
    snapshot: SnapshotDescriptor
    committed_at: float

    @property
    def snapshot_text(self) -> str:
        return self.snapshot.to_text()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "xid": self.xid,
            "snapshot": self.snapshot_text,
            "committed_at": self.committed_at,
        }

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "CommitRecord":
        return CommitRecord(
            seq=int(d["seq"]),
            xid=int(d["xid"]),
            snapshot=parse_snapshot(str(d["snapshot"])),
            committed_at=float(d["committed_at"]),
        )


# ----------------------------
# Durable store
# ----------------------------


class SQLiteCommitStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self.path), timeout=30)
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=NORMAL;")
        return con

    def _init_db(self) -> None:
        con = self._connect()
        try:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS commits (
                    seq INTEGER PRIMARY KEY,
                    xid INTEGER NOT NULL,
                    snapshot TEXT NOT NULL,
                    committed_at REAL NOT NULL
                )
                """
            )
            con.commit()
        finally:
            con.close()

    def append(self, record: CommitRecord) -> None:
        con = self._connect()
        try:
            con.execute(
                "INSERT INTO commits(seq, xid, snapshot, committed_at) VALUES (?, ?, ?, ?)",
                (record.seq, record.xid, record.snapshot_text, record.committed_at),
            )
            con.commit()
        finally:
            con.close()

    def get(self, seq: int) -> Optional[CommitRecord]:
        con = self._connect()
        try:
            row = con.execute(
                "SELECT seq, xid, snapshot, committed_at FROM commits WHERE seq = ?",
                (int(seq),),
            ).fetchone()
        finally:
            con.close()
        if row is None:
            return None
        return CommitRecord.from_dict(dict(zip(("seq", "xid", "snapshot", "committed_at"), row)))

    def all(self) -> List[CommitRecord]:
        con = self._connect()
        try:
            rows = con.execute(
                "SELECT seq, xid, snapshot, committed_at FROM commits ORDER BY seq"
            ).fetchall()
        finally:
            con.close()
        return [
            CommitRecord.from_dict(dict(zip(("seq", "xid", "snapshot", "committed_at"), r)))
            for r in rows
        ]

    def last_seq(self) -> int:
        con = self._connect()
        try:
            row = con.execute("SELECT MAX(seq) FROM commits").fetchone()
        finally:
            con.close()
        return int(row[0]) if row and row[0] is not None else 0


# ----------------------------
# History
# ----------------------------


class CommitHistory:
    """
    Follows a database's transaction ids and records, for every commit, the
    snapshot text that makes exactly the commits up to and including it
    visible.
    """

    def __init__(self, db: Database, store: Optional[SQLiteCommitStore] = None):
        self.db = db
        self.store = store
        self._in_flight: Set[int] = set()
        self._latest_committed: Optional[int] = None
        self._records: List[CommitRecord] = []
        self._cond = threading.Condition()
        self._attached = False
        self._seq = store.last_seq() if store is not None else 0

    def attach(self) -> "CommitHistory":
        if not self._attached:
            self.db.add_xid_listener(self._on_xid_event)
            self._attached = True
        return self

    def detach(self) -> None:
        if self._attached:
            self.db.remove_xid_listener(self._on_xid_event)
            self._attached = False

    def __enter__(self) -> "CommitHistory":
        return self.attach()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.detach()

    @property
    def in_flight(self) -> Set[int]:
        return set(self._in_flight)

    @property
    def records(self) -> List[CommitRecord]:
        with self._cond:
            return list(self._records)

    def latest(self) -> Optional[CommitRecord]:
        with self._cond:
            return self._records[-1] if self._records else None

    def nth(self, n: int) -> CommitRecord:
        if n < 1:
            raise ValueError(f"n must be >= 1. Got: {n}")
        with self._cond:
            if len(self._records) < n:
                raise LookupError(f"only {len(self._records)} commit(s) recorded, wanted #{n}")
            return self._records[n - 1]

    def wait_for(self, n: int, timeout: float = 0.0) -> CommitRecord:
        if n < 1:
            raise ValueError(f"n must be >= 1. Got: {n}")
        deadline = time.monotonic() + timeout
        with self._cond:
            while len(self._records) < n:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise LookupError(
                        f"only {len(self._records)} commit(s) recorded after {timeout}s, wanted #{n}"
                    )
                self._cond.wait(remaining)
            return self._records[n - 1]

    def _on_xid_event(self, kind: XidEventKind, xid: int) -> None:
        if kind is XidEventKind.ASSIGNED:
            self._in_flight.add(xid)
            return
        if kind is XidEventKind.ABORTED:
            self._in_flight.discard(xid)
            return

        snapshot = snapshot_after_commit(xid, self._in_flight, self._latest_committed)
        self._in_flight.discard(xid)
        if self._latest_committed is None or xid > self._latest_committed:
            self._latest_committed = xid
        with self._cond:
            self._seq += 1
            record = CommitRecord(seq=self._seq, xid=xid, snapshot=snapshot, committed_at=time.time())
            self._records.append(record)
            self._cond.notify_all()
        if self.store is not None:
            self.store.append(record)
        logger.debug("commit #%s xid=%s snapshot=%s", record.seq, xid, snapshot)
