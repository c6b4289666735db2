"""Reference MVCC host engine.

Row versions live in DuckDB heap tables tagged with the inserting (`_xmin`)
and deleting (`_xmax`) transaction ids, and commit status lives in a small
commit log table. Reads go through per-session temporary views whose WHERE
clause applies the visibility rules of the snapshot in effect, so any SQL
DuckDB understands can run "as of" any snapshot.

The engine provides the transaction, snapshot, variable and hook machinery
the asof extension plugs into. It is single-threaded: a session never
blocks, and a write that would have to wait for another transaction fails
with SerializationFailure instead.
"""

from __future__ import annotations

import bisect
import itertools
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import (
    Any,
    Callable,
    ClassVar,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)

import duckdb

from .utils import HEAP_PREFIX
from .utils import column_definitions as _column_definitions
from .utils import heap_table_name as _heap_table_name
from .utils import quote_ident as _quote_ident
from .utils import quote_literal as _quote_literal
from .utils import validate_identifier as _validate_identifier

logger = logging.getLogger(__name__)

FIRST_NORMAL_XID = 3

_CLOG_TABLE = "asof__clog"

# ----------------------------
# Errors
# ----------------------------


class EngineError(RuntimeError):
    sqlstate = "XX000"

    def __init__(self, message: str, *, sqlstate: Optional[str] = None):
        super().__init__(message)
        if sqlstate is not None:
            self.sqlstate = sqlstate


class TransactionStateError(EngineError):
    sqlstate = "25000"


class InFailedTransaction(TransactionStateError):
    sqlstate = "25P02"


class ReadOnlyTransaction(TransactionStateError):
    sqlstate = "25006"


class SerializationFailure(EngineError):
    sqlstate = "40001"


class UndefinedObject(EngineError):
    sqlstate = "42704"


class QueryError(EngineError):
    sqlstate = "42000"


# ----------------------------
# Enums and snapshot type
# ----------------------------


class IsolationLevel(Enum):
    READ_COMMITTED = "read committed"
    REPEATABLE_READ = "repeatable read"
    SERIALIZABLE = "serializable"

    @property
    def uses_transaction_snapshot(self) -> bool:
        return self is not IsolationLevel.READ_COMMITTED

    @staticmethod
    def parse(value: "IsolationLevel | str") -> "IsolationLevel":
        if isinstance(value, IsolationLevel):
            return value
        normalized = " ".join(str(value).replace("_", " ").lower().split())
        for level in IsolationLevel:
            if level.value == normalized:
                return level
        raise ValueError(f"Unknown isolation level: {value!r}")


class XactEvent(Enum):
    PRE_COMMIT = auto()
    COMMIT = auto()
    PARALLEL_PRE_COMMIT = auto()
    PARALLEL_COMMIT = auto()
    ABORT = auto()
    PARALLEL_ABORT = auto()
    PRE_PREPARE = auto()
    PREPARE = auto()


class XidStatus(Enum):
    IN_PROGRESS = auto()
    COMMITTED = auto()
    ABORTED = auto()


class XidEventKind(Enum):
    ASSIGNED = auto()
    COMMITTED = auto()
    ABORTED = auto()


@dataclass
class SnapshotData:
    """Engine-native visibility snapshot.

    `xip` must be sorted; `active_count` and `regd_count` are maintained by
    the session that pushes or registers the snapshot.
    """

    xmin: int
    xmax: int
    xip: Tuple[int, ...] = ()
    subxip: Tuple[int, ...] = ()
    suboverflowed: bool = False
    curcid: int = 0
    copied: bool = False
    active_count: int = 0
    regd_count: int = 0

    def xid_in_snapshot(self, xid: int) -> bool:
        """True when `xid` was still running as far as this snapshot is concerned."""
        if xid < self.xmin:
            return False
        if xid >= self.xmax:
            return True
        i = bisect.bisect_left(self.xip, xid)
        if i < len(self.xip) and self.xip[i] == xid:
            return True
        return xid in self.subxip

    def to_text(self) -> str:
        return f"{self.xmin}:{self.xmax}:{','.join(str(x) for x in self.xip)}"

    def __str__(self) -> str:
        return self.to_text()


class SpiStatus(Enum):
    OK_SELECT = auto()
    OK_UTILITY = auto()


@dataclass(frozen=True)
class SpiResult:
    status: SpiStatus
    columns: Tuple[str, ...]
    rows: List[Tuple[Any, ...]]

    @property
    def processed(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class QueryDesc:
    sql: str
    params: Tuple[Optional[str], ...] = ()
    read_only: bool = True
    command: str = "SELECT"


QueryStartHook = Callable[["Session", QueryDesc], None]
XactCallback = Callable[[XactEvent, "Session"], None]
XidListener = Callable[[XidEventKind, int], None]
CheckHook = Callable[["Session", str], Any]
AssignHook = Callable[["Session", str, Any], None]


@dataclass
class VariableDef:
    name: str
    default: str = ""
    check_hook: Optional[CheckHook] = None
    assign_hook: Optional[AssignHook] = None


# ----------------------------
# Configuration
# ----------------------------


@dataclass
class EngineConfig:
    SPEC_VERSION: ClassVar[int] = 1

    database: str = ":memory:"
    default_isolation: str = IsolationLevel.READ_COMMITTED.value
    settings: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.database:
            raise ValueError("EngineConfig.database must be set")
        IsolationLevel.parse(self.default_isolation)
        for key, value in self.settings.items():
            _validate_identifier(key, what="setting name")
            if not isinstance(value, (str, int, float, bool)):
                raise ValueError(f"Setting {key!r} must be a scalar. Got: {value!r}")

    @property
    def isolation(self) -> IsolationLevel:
        return IsolationLevel.parse(self.default_isolation)

    def connect_duckdb(self) -> duckdb.DuckDBPyConnection:
        self.validate()
        con = duckdb.connect(self.database)
        for key, value in self.settings.items():
            if isinstance(value, bool):
                literal = "true" if value else "false"
            elif isinstance(value, (int, float)):
                literal = str(value)
            else:
                literal = _quote_literal(str(value))
            con.execute(f"SET {key} = {literal}")
        return con

    def to_dict(self) -> Dict[str, Any]:
        return {
            "spec_version": self.SPEC_VERSION,
            "database": self.database,
            "default_isolation": self.default_isolation,
            "settings": dict(self.settings),
        }

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "EngineConfig":
        spec_version = int(d.get("spec_version", 1))
        if spec_version != EngineConfig.SPEC_VERSION:
            raise ValueError(
                f"Unsupported engine spec_version={spec_version}. Expected {EngineConfig.SPEC_VERSION}."
            )
        cfg = EngineConfig(
            database=str(d.get("database", ":memory:")),
            default_isolation=str(d.get("default_isolation", IsolationLevel.READ_COMMITTED.value)),
            settings=dict(d.get("settings") or {}),
        )
        cfg.validate()
        return cfg

    @staticmethod
    def load(path: str | Path) -> "EngineConfig":
        p = Path(path)
        data = json.loads(p.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Engine config {p} must be a JSON object")
        return EngineConfig.from_dict(data)

    def save(self, path: str | Path) -> None:
        Path(path).write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True), encoding="utf-8")


# ----------------------------
# Visibility
# ----------------------------


def _xid_not_in_snapshot_sql(column: str, snapshot: SnapshotData) -> str:
    clauses = [f"{column} < {int(snapshot.xmax)}"]
    running = sorted(set(snapshot.xip) | set(snapshot.subxip))
    if running:
        clauses.append(f"{column} NOT IN ({', '.join(str(int(x)) for x in running)})")
    return " AND ".join(clauses)


def visibility_predicate(snapshot: SnapshotData, own_xid: Optional[int], alias: str = "h") -> str:
    """SQL predicate selecting the heap row versions visible under `snapshot`."""
    committed = f"SELECT xid FROM {_CLOG_TABLE} WHERE committed"
    xmin_col = f"{alias}._xmin"
    xmax_col = f"{alias}._xmax"

    inserted = f"({xmin_col} IN ({committed}) AND {_xid_not_in_snapshot_sql(xmin_col, snapshot)})"
    deleted = f"({xmax_col} IN ({committed}) AND {_xid_not_in_snapshot_sql(xmax_col, snapshot)})"
    if own_xid is not None:
        inserted = f"({xmin_col} = {int(own_xid)} OR {inserted})"
        deleted = f"({xmax_col} = {int(own_xid)} OR {deleted})"
    return f"{inserted} AND ({xmax_col} IS NULL OR NOT {deleted})"


# ----------------------------
# Transaction state
# ----------------------------


@dataclass
class _Savepoint:
    name: str
    undo: List[Tuple[str, str, int]] = field(default_factory=list)


@dataclass
class _Transaction:
    lxid: int
    isolation: IsolationLevel
    explicit: bool
    xid: Optional[int] = None
    read_only: bool = False
    failed: bool = False
    snapshot: Optional[SnapshotData] = None
    first_snapshot_set: bool = False
    active: List[SnapshotData] = field(default_factory=list)
    savepoints: List[_Savepoint] = field(default_factory=list)


# ----------------------------
# Database
# ----------------------------


class Database:
    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self._con = self.config.connect_duckdb()

        self._tables: Dict[str, Dict[str, str]] = {}
        self._ctid = itertools.count(1)
        self._lxid = itertools.count(1)

        self._next_xid = FIRST_NORMAL_XID
        self._latest_completed: Optional[int] = None
        self._running: Set[int] = set()
        self._clog: Dict[int, XidStatus] = {}
        self._prepared: Dict[str, int] = {}

        self._variables: Dict[str, VariableDef] = {}
        self._functions: Dict[str, Callable[..., Any]] = {}
        self._query_start_hooks: List[QueryStartHook] = []
        self._xact_callbacks: List[XactCallback] = []
        self._xid_listeners: List[XidListener] = []

        self._con.execute(
            f"CREATE TABLE IF NOT EXISTS {_CLOG_TABLE} (xid BIGINT PRIMARY KEY, committed BOOLEAN NOT NULL)"
        )
        self._recover()

    def _recover(self) -> None:
        # A file-backed database keeps its heap and commit log; anything that
        # never reached the commit log was in progress at shutdown.
        rows = self._con.execute(f"SELECT xid, committed FROM {_CLOG_TABLE}").fetchall()
        for xid, committed in rows:
            self._clog[int(xid)] = XidStatus.COMMITTED if committed else XidStatus.ABORTED
        if self._clog:
            self._latest_completed = max(self._clog)
            self._next_xid = self._latest_completed + 1

        tables = self._con.execute(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_type = 'BASE TABLE' AND starts_with(table_name, ?)",
            [HEAP_PREFIX],
        ).fetchall()
        max_ctid = 0
        for (physical,) in tables:
            name = physical[len(HEAP_PREFIX):]
            cols = self._con.execute(
                "SELECT column_name, data_type FROM information_schema.columns "
                "WHERE table_name = ? ORDER BY ordinal_position",
                [physical],
            ).fetchall()
            self._tables[name] = {c: t for c, t in cols if not c.startswith("_")}
            max_ids = self._con.execute(
                f"SELECT max(_ctid), max(_xmin), max(_xmax) FROM {_quote_ident(physical)}"
            ).fetchone()
            if max_ids[0] is not None:
                max_ctid = max(max_ctid, int(max_ids[0]))
            seen = [int(x) for x in max_ids[1:] if x is not None]
            if seen:
                self._next_xid = max(self._next_xid, max(seen) + 1)
        self._ctid = itertools.count(max_ctid + 1)
        for xid in range(FIRST_NORMAL_XID, self._next_xid):
            if xid not in self._clog:
                self._complete_xid(xid, committed=False)

    # -- catalog --

    @property
    def tables(self) -> Dict[str, Dict[str, str]]:
        return {k: dict(v) for k, v in self._tables.items()}

    def create_table(self, name: str, schema: Mapping[str, str]) -> None:
        _validate_identifier(name, what="table name")
        if name in self._tables:
            raise ValueError(f"Table {name!r} already exists.")
        columns = _column_definitions(schema)
        col_sql = ", ".join(f"{_quote_ident(c)} {t}" for c, t in columns.items())
        self._con.execute(
            f"CREATE TABLE {_quote_ident(_heap_table_name(name))} "
            f"({col_sql}, _ctid BIGINT NOT NULL, _xmin BIGINT NOT NULL, _xmax BIGINT)"
        )
        self._tables[name] = columns
        logger.debug("created table %s (%s)", name, ", ".join(columns))

    def connect(self) -> "Session":
        return Session(self)

    def close(self) -> None:
        self._con.close()

    # -- registration surface --

    def define_variable(
        self,
        name: str,
        default: str = "",
        *,
        check_hook: Optional[CheckHook] = None,
        assign_hook: Optional[AssignHook] = None,
    ) -> None:
        if name in self._variables:
            raise ValueError(f"Variable {name!r} is already defined.")
        self._variables[name] = VariableDef(name, default, check_hook, assign_hook)

    def undefine_variable(self, name: str) -> None:
        self._variables.pop(name, None)

    def register_function(self, name: str, fn: Callable[..., Any]) -> None:
        if name in self._functions:
            raise ValueError(f"Function {name!r} is already registered.")
        self._functions[name] = fn

    def unregister_function(self, name: str) -> None:
        self._functions.pop(name, None)

    def register_query_start_hook(self, hook: QueryStartHook) -> None:
        self._query_start_hooks.append(hook)

    def unregister_query_start_hook(self, hook: QueryStartHook) -> None:
        if hook in self._query_start_hooks:
            self._query_start_hooks.remove(hook)

    def register_xact_callback(self, callback: XactCallback) -> None:
        self._xact_callbacks.append(callback)

    def unregister_xact_callback(self, callback: XactCallback) -> None:
        if callback in self._xact_callbacks:
            self._xact_callbacks.remove(callback)

    def add_xid_listener(self, listener: XidListener) -> None:
        self._xid_listeners.append(listener)

    def remove_xid_listener(self, listener: XidListener) -> None:
        if listener in self._xid_listeners:
            self._xid_listeners.remove(listener)

    # -- transaction ids --

    def xid_status(self, xid: int) -> XidStatus:
        if xid < FIRST_NORMAL_XID:
            return XidStatus.COMMITTED
        return self._clog.get(xid, XidStatus.IN_PROGRESS)

    def _assign_xid(self) -> int:
        xid = self._next_xid
        self._next_xid += 1
        self._running.add(xid)
        for listener in list(self._xid_listeners):
            listener(XidEventKind.ASSIGNED, xid)
        return xid

    def _complete_xid(self, xid: int, *, committed: bool) -> None:
        self._con.execute(f"INSERT INTO {_CLOG_TABLE} VALUES (?, ?)", [xid, committed])
        self._clog[xid] = XidStatus.COMMITTED if committed else XidStatus.ABORTED
        self._running.discard(xid)
        if self._latest_completed is None or xid > self._latest_completed:
            self._latest_completed = xid
        kind = XidEventKind.COMMITTED if committed else XidEventKind.ABORTED
        for listener in list(self._xid_listeners):
            listener(kind, xid)

    def _snapshot_data(self, exclude_xid: Optional[int]) -> SnapshotData:
        xmax = (self._latest_completed + 1) if self._latest_completed is not None else FIRST_NORMAL_XID
        xip = tuple(sorted(x for x in self._running if x != exclude_xid and x < xmax))
        xmin = xip[0] if xip else xmax
        return SnapshotData(xmin=xmin, xmax=xmax, xip=xip)

    def finish_prepared(self, gid: str, *, commit: bool = True) -> None:
        if gid not in self._prepared:
            raise UndefinedObject(f"prepared transaction with identifier {gid!r} does not exist")
        xid = self._prepared.pop(gid)
        self._complete_xid(xid, committed=commit)
        logger.debug("%s prepared transaction %s (xid %s)", "committed" if commit else "rolled back", gid, xid)

    @property
    def prepared_transactions(self) -> Dict[str, int]:
        return dict(self._prepared)


# ----------------------------
# SPI
# ----------------------------


class SpiConnection:
    """Runs statements from inside a server-side function, under the active snapshot."""

    def __init__(self, session: "Session"):
        self._session = session
        self._open = True

    def _require_open(self) -> None:
        if not self._open:
            raise EngineError("SPI connection is already finished")

    def describe(self, sql: str, params: Sequence[Optional[str]] = ()) -> Tuple[str, ...]:
        self._require_open()
        probe = self._session._run_select(f"SELECT * FROM ({sql}) AS q LIMIT 0", params)
        return probe.columns

    def execute(
        self,
        sql: str,
        params: Sequence[Optional[str]] = (),
        *,
        read_only: bool = True,
    ) -> SpiResult:
        self._require_open()
        session = self._session
        query = QueryDesc(sql=sql, params=tuple(params), read_only=read_only)
        session._run_query_start_hooks(query)
        if session.active_snapshot is None:
            raise EngineError("SPI execution requires an active snapshot")
        return session._run_select(sql, params, read_only=read_only)

    def finish(self) -> None:
        self._open = False


# ----------------------------
# Session
# ----------------------------


class Session:
    def __init__(self, db: Database):
        self.db = db
        self._cur = db._con.cursor()
        self._values: Dict[str, str] = {}
        self._xact: Optional[_Transaction] = None
        self._closed = False

    # -- properties read by the guardrails --

    @property
    def in_transaction(self) -> bool:
        return self._xact is not None

    @property
    def in_transaction_block(self) -> bool:
        return self._xact is not None and self._xact.explicit

    @property
    def isolation(self) -> IsolationLevel:
        if self._xact is None:
            return self.db.config.isolation
        return self._xact.isolation

    @property
    def in_subtransaction(self) -> bool:
        return self._xact is not None and bool(self._xact.savepoints)

    @property
    def first_snapshot_set(self) -> bool:
        return self._xact is not None and self._xact.first_snapshot_set

    @property
    def lxid(self) -> Optional[int]:
        return self._xact.lxid if self._xact is not None else None

    @property
    def xid(self) -> Optional[int]:
        return self._xact.xid if self._xact is not None else None

    @property
    def read_only(self) -> bool:
        return self._xact is not None and self._xact.read_only

    @property
    def active_snapshot(self) -> Optional[SnapshotData]:
        if self._xact is None or not self._xact.active:
            return None
        return self._xact.active[-1]

    # -- transaction control --

    def begin(self, isolation: "IsolationLevel | str | None" = None, *, read_only: bool = False) -> None:
        self._require_open()
        if self.in_transaction_block:
            raise TransactionStateError("there is already a transaction in progress")
        level = IsolationLevel.parse(isolation) if isolation is not None else self.db.config.isolation
        self._start(level, explicit=True)
        self._xact.read_only = read_only

    def commit(self) -> None:
        if not self.in_transaction_block:
            logger.warning("COMMIT: there is no transaction in progress")
            return
        if self._xact.failed:
            self._abort()
            return
        self._commit()

    def rollback(self) -> None:
        if not self.in_transaction_block:
            logger.warning("ROLLBACK: there is no transaction in progress")
            return
        self._abort()

    def prepare_transaction(self, gid: str) -> None:
        if not self.in_transaction_block:
            raise TransactionStateError("PREPARE TRANSACTION can only be used in transaction blocks")
        if gid in self.db._prepared:
            raise TransactionStateError(f"transaction identifier {gid!r} is already in use")
        if self._xact.failed:
            self._abort()
            return
        self._fire(XactEvent.PRE_PREPARE)
        xact = self._xact
        if xact.xid is not None:
            self.db._prepared[gid] = xact.xid
        self._xact = None
        self._fire(XactEvent.PREPARE)
        logger.debug("prepared transaction %s (xid %s)", gid, xact.xid)

    def savepoint(self, name: str) -> None:
        xact = self._require_block()
        if xact.failed:
            raise InFailedTransaction("current transaction is aborted, commands ignored until end of transaction block")
        xact.savepoints.append(_Savepoint(name))

    def release_savepoint(self, name: str) -> None:
        xact = self._require_block()
        idx = self._find_savepoint(name)
        released = xact.savepoints[idx:]
        del xact.savepoints[idx:]
        if xact.savepoints:
            for sp in released:
                xact.savepoints[-1].undo.extend(sp.undo)

    def rollback_to_savepoint(self, name: str) -> None:
        xact = self._require_block()
        idx = self._find_savepoint(name)
        for sp in reversed(xact.savepoints[idx:]):
            self._undo(sp.undo)
        del xact.savepoints[idx + 1:]
        xact.savepoints[idx].undo = []
        xact.failed = False

    def _find_savepoint(self, name: str) -> int:
        for idx in range(len(self._xact.savepoints) - 1, -1, -1):
            if self._xact.savepoints[idx].name == name:
                return idx
        raise UndefinedObject(f"savepoint {name!r} does not exist", sqlstate="3B001")

    def _undo(self, actions: List[Tuple[str, str, int]]) -> None:
        for action, table, ctid in reversed(actions):
            heap = _quote_ident(_heap_table_name(table))
            if action == "insert":
                self._cur.execute(f"DELETE FROM {heap} WHERE _ctid = ?", [ctid])
            else:
                self._cur.execute(f"UPDATE {heap} SET _xmax = NULL WHERE _ctid = ?", [ctid])

    def _start(self, isolation: IsolationLevel, *, explicit: bool) -> None:
        self._xact = _Transaction(lxid=next(self.db._lxid), isolation=isolation, explicit=explicit)

    def _commit(self) -> None:
        self._fire(XactEvent.PRE_COMMIT)
        xact = self._xact
        if xact.xid is not None:
            self.db._complete_xid(xact.xid, committed=True)
        self._xact = None
        self._fire(XactEvent.COMMIT)

    def _abort(self) -> None:
        xact = self._xact
        if xact.xid is not None:
            self.db._complete_xid(xact.xid, committed=False)
        self._xact = None
        self._fire(XactEvent.ABORT)

    def _fire(self, event: XactEvent) -> None:
        for callback in list(self.db._xact_callbacks):
            callback(event, self)

    def _require_open(self) -> None:
        if self._closed:
            raise EngineError("session is closed")

    def _require_block(self) -> _Transaction:
        if not self.in_transaction_block:
            raise TransactionStateError("savepoints can only be used in transaction blocks", sqlstate="25P01")
        return self._xact

    @contextmanager
    def _statement(self) -> Iterator[_Transaction]:
        self._require_open()
        if self._xact is not None and self._xact.failed:
            raise InFailedTransaction(
                "current transaction is aborted, commands ignored until end of transaction block"
            )
        implicit = self._xact is None
        if implicit:
            self._start(self.db.config.isolation, explicit=False)
        try:
            yield self._xact
        except BaseException:
            if implicit:
                if self._xact is not None:
                    self._abort()
            elif self._xact is not None:
                self._xact.failed = True
            raise
        if implicit and self._xact is not None:
            self._commit()

    # -- snapshots --

    def peek_snapshot(self) -> SnapshotData:
        """Compute a fresh snapshot without fixing it as the transaction snapshot."""
        return self.db._snapshot_data(self.xid)

    def get_transaction_snapshot(self) -> SnapshotData:
        xact = self._xact
        if xact is None:
            raise TransactionStateError("cannot take a snapshot outside a transaction")
        if xact.first_snapshot_set and xact.isolation.uses_transaction_snapshot:
            return xact.snapshot
        snap = self.db._snapshot_data(xact.xid)
        if xact.isolation.uses_transaction_snapshot:
            snap.regd_count += 1
        xact.snapshot = snap
        xact.first_snapshot_set = True
        return snap

    def set_transaction_snapshot(self, snapshot: SnapshotData) -> None:
        xact = self._xact
        if xact is None:
            raise TransactionStateError("cannot set a transaction snapshot outside a transaction")
        if xact.first_snapshot_set:
            raise TransactionStateError("a transaction snapshot must be set before any query")
        if not xact.isolation.uses_transaction_snapshot:
            raise TransactionStateError(
                "a snapshot-importing transaction must have isolation level SERIALIZABLE or REPEATABLE READ"
            )
        snapshot.regd_count += 1
        xact.snapshot = snapshot
        xact.first_snapshot_set = True

    def push_active_snapshot(self, snapshot: SnapshotData) -> None:
        if self._xact is None:
            raise TransactionStateError("cannot push an active snapshot outside a transaction")
        snapshot.active_count += 1
        self._xact.active.append(snapshot)

    def pop_active_snapshot(self) -> SnapshotData:
        if self._xact is None or not self._xact.active:
            raise EngineError("active snapshot stack is empty")
        snapshot = self._xact.active.pop()
        snapshot.active_count -= 1
        return snapshot

    @contextmanager
    def active_snapshot_scope(self, snapshot: SnapshotData) -> Iterator[SnapshotData]:
        self.push_active_snapshot(snapshot)
        try:
            yield snapshot
        finally:
            self.pop_active_snapshot()

    def set_read_only(self) -> None:
        if self._xact is None:
            raise TransactionStateError("no transaction in progress")
        self._xact.read_only = True

    def current_snapshot(self) -> SnapshotData:
        with self._statement():
            return self.peek_snapshot()

    def current_xid(self) -> int:
        with self._statement() as xact:
            if xact.xid is None:
                xact.xid = self.db._assign_xid()
            return xact.xid

    # -- hooks, variables, functions --

    def _run_query_start_hooks(self, query: QueryDesc) -> None:
        for hook in list(self.db._query_start_hooks):
            hook(self, query)

    def set(self, name: str, value: str) -> None:
        self._require_open()
        var = self.db._variables.get(name)
        if var is None:
            raise UndefinedObject(f"unrecognized configuration parameter {name!r}")
        if self._xact is not None and self._xact.failed:
            raise InFailedTransaction(
                "current transaction is aborted, commands ignored until end of transaction block"
            )
        value = "" if value is None else str(value)
        try:
            extra = var.check_hook(self, value) if var.check_hook is not None else None
        except Exception:
            if self.in_transaction_block:
                self._xact.failed = True
            raise
        self._values[name] = value
        if var.assign_hook is not None:
            var.assign_hook(self, value, extra)

    def show(self, name: str) -> str:
        var = self.db._variables.get(name)
        if var is None:
            raise UndefinedObject(f"unrecognized configuration parameter {name!r}")
        return self._values.get(name, var.default)

    def reset(self, name: str) -> None:
        var = self.db._variables.get(name)
        if var is None:
            raise UndefinedObject(f"unrecognized configuration parameter {name!r}")
        self.set(name, var.default)

    def invoke(self, name: str, *args: Any) -> Any:
        """Call a registered function as a top-level statement (SELECT fn(...))."""
        fn = self.db._functions.get(name)
        if fn is None:
            raise UndefinedObject(f"function {name} does not exist", sqlstate="42883")
        with self._statement():
            self._run_query_start_hooks(QueryDesc(sql=f"SELECT {name}(...)", command="SELECT"))
            with self.active_snapshot_scope(self.get_transaction_snapshot()):
                return fn(self, *args)

    def spi_connect(self) -> SpiConnection:
        if self._xact is None:
            raise EngineError("SPI can only be used inside a transaction")
        return SpiConnection(self)

    # -- queries --

    def execute(self, sql: str, params: Optional[Sequence[Optional[str]]] = None) -> SpiResult:
        params = tuple(params or ())
        with self._statement():
            self._run_query_start_hooks(QueryDesc(sql=sql, params=params))
            with self.active_snapshot_scope(self.get_transaction_snapshot()):
                return self._run_select(sql, params)

    def _bind_visibility(self, snapshot: SnapshotData) -> None:
        own = self.xid
        predicate = visibility_predicate(snapshot, own, alias="h")
        for name, columns in self.db._tables.items():
            cols = ", ".join(f"h.{_quote_ident(c)}" for c in columns)
            self._cur.execute(
                f"CREATE OR REPLACE TEMP VIEW {_quote_ident(name)} AS "
                f"SELECT {cols} FROM {_quote_ident(_heap_table_name(name))} AS h WHERE {predicate}"
            )

    def _run_select(
        self,
        sql: str,
        params: Sequence[Optional[str]] = (),
        *,
        read_only: bool = True,
    ) -> SpiResult:
        snapshot = self.active_snapshot
        if snapshot is None:
            raise EngineError("no active snapshot")
        try:
            statements = self._cur.extract_statements(sql)
        except duckdb.Error as exc:
            raise QueryError(str(exc), sqlstate="42601") from exc
        if len(statements) != 1:
            raise QueryError(f"expected exactly one statement, got {len(statements)}", sqlstate="42601")
        kind = statements[0].type.name
        if kind == "SELECT":
            status = SpiStatus.OK_SELECT
        elif kind == "EXPLAIN":
            status = SpiStatus.OK_UTILITY
        elif read_only:
            raise ReadOnlyTransaction(f"{kind} is not allowed in a read-only execution context")
        else:
            raise QueryError(f"{kind} statements are not supported; use the session DML methods")

        self._bind_visibility(snapshot)
        try:
            if params:
                self._cur.execute(sql, list(params))
            else:
                self._cur.execute(sql)
            columns = tuple(d[0] for d in (self._cur.description or ()))
            rows = self._cur.fetchall()
        except duckdb.Error as exc:
            raise QueryError(str(exc)) from exc
        return SpiResult(status=status, columns=columns, rows=rows)

    # -- DML --

    def _prepare_write(self, command: str, table: str) -> Tuple[_Transaction, SnapshotData, Dict[str, str]]:
        xact = self._xact
        self._run_query_start_hooks(QueryDesc(sql=f"{command} {table}", read_only=False, command=command))
        if xact.read_only:
            raise ReadOnlyTransaction(f"cannot execute {command} in a read-only transaction")
        columns = self.db._tables.get(table)
        if columns is None:
            raise UndefinedObject(f"relation {table!r} does not exist", sqlstate="42P01")
        snapshot = self.get_transaction_snapshot()
        if xact.xid is None:
            xact.xid = self.db._assign_xid()
        return xact, snapshot, columns

    def _record_undo(self, xact: _Transaction, action: str, table: str, ctid: int) -> None:
        if xact.savepoints:
            xact.savepoints[-1].undo.append((action, table, ctid))

    def _insert_version(self, xact: _Transaction, table: str, columns: Mapping[str, str], row: Mapping[str, Any]) -> None:
        unknown = set(row) - set(columns)
        if unknown:
            raise QueryError(f"column(s) {', '.join(sorted(unknown))} of relation {table!r} do not exist")
        ctid = next(self.db._ctid)
        names = list(columns)
        values = [row.get(c) for c in names]
        col_sql = ", ".join(_quote_ident(c) for c in names)
        marks = ", ".join("?" for _ in range(len(names) + 3))
        try:
            self._cur.execute(
                f"INSERT INTO {_quote_ident(_heap_table_name(table))} ({col_sql}, _ctid, _xmin, _xmax) "
                f"VALUES ({marks})",
                values + [ctid, xact.xid, None],
            )
        except duckdb.Error as exc:
            raise QueryError(str(exc)) from exc
        self._record_undo(xact, "insert", table, ctid)

    def _lock_visible(
        self,
        xact: _Transaction,
        snapshot: SnapshotData,
        table: str,
        columns: Mapping[str, str],
        where: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        unknown = set(where) - set(columns)
        if unknown:
            raise QueryError(f"column(s) {', '.join(sorted(unknown))} of relation {table!r} do not exist")
        clauses = [visibility_predicate(snapshot, xact.xid, alias="h")]
        params: List[Any] = []
        for col, value in where.items():
            if value is None:
                clauses.append(f"h.{_quote_ident(col)} IS NULL")
            else:
                clauses.append(f"h.{_quote_ident(col)} = ?")
                params.append(value)
        names = list(columns)
        col_sql = ", ".join(f"h.{_quote_ident(c)}" for c in names)
        heap = _quote_ident(_heap_table_name(table))
        try:
            found = self._cur.execute(
                f"SELECT {col_sql}, h._ctid, h._xmax FROM {heap} AS h WHERE {' AND '.join(clauses)} ORDER BY h._ctid",
                params,
            ).fetchall()
        except duckdb.Error as exc:
            raise QueryError(str(exc)) from exc

        rows: List[Dict[str, Any]] = []
        for rec in found:
            ctid, xmax = rec[-2], rec[-1]
            if xmax is not None and xmax != xact.xid:
                status = self.db.xid_status(int(xmax))
                if status is XidStatus.IN_PROGRESS:
                    raise SerializationFailure(
                        f"could not serialize access: row in {table!r} is being modified by transaction {xmax}"
                    )
                if status is XidStatus.COMMITTED:
                    raise SerializationFailure(f"could not serialize access due to concurrent update of {table!r}")
            self._cur.execute(f"UPDATE {heap} SET _xmax = ? WHERE _ctid = ?", [xact.xid, ctid])
            self._record_undo(xact, "delete", table, int(ctid))
            rows.append(dict(zip(names, rec[: len(names)])))
        return rows

    def insert(self, table: str, row: Mapping[str, Any]) -> None:
        with self._statement():
            xact, _, columns = self._prepare_write("INSERT", table)
            self._insert_version(xact, table, columns, row)

    def update(self, table: str, values: Mapping[str, Any], where: Optional[Mapping[str, Any]] = None) -> int:
        with self._statement():
            xact, snapshot, columns = self._prepare_write("UPDATE", table)
            unknown = set(values) - set(columns)
            if unknown:
                raise QueryError(f"column(s) {', '.join(sorted(unknown))} of relation {table!r} do not exist")
            old_rows = self._lock_visible(xact, snapshot, table, columns, where or {})
            for old in old_rows:
                self._insert_version(xact, table, columns, {**old, **values})
            return len(old_rows)

    def delete(self, table: str, where: Optional[Mapping[str, Any]] = None) -> int:
        with self._statement():
            xact, snapshot, columns = self._prepare_write("DELETE", table)
            return len(self._lock_visible(xact, snapshot, table, columns, where or {}))

    def close(self) -> None:
        if self._closed:
            return
        if self._xact is not None:
            self._abort()
        self._cur.close()
        self._closed = True
