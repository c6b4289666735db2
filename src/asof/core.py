from __future__ import annotations

import dataclasses
import json
import logging
import math
import re
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterator, Optional, Sequence, Tuple, Union

from .engine import (
    Database,
    EngineError,
    QueryDesc,
    Session,
    SnapshotData,
    SpiConnection,
    SpiStatus,
    XactEvent,
)
from .utils import is_read_only_query, json_aggregate_sql

logger = logging.getLogger(__name__)

MAX_XID = 2**64 - 1

_XID_RE = re.compile(r"[0-9]+")

# ----------------------------
# Errors
# ----------------------------


class AsOfError(Exception):
    sqlstate = "XX000"

    def __init__(self, message: str, *, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class MalformedSnapshot(AsOfError, ValueError):
    sqlstate = "22023"


class NoActiveTransaction(AsOfError):
    sqlstate = "25P01"


class WrongIsolationLevel(AsOfError):
    sqlstate = "0A000"


class InSubtransaction(AsOfError):
    sqlstate = "25001"


class SnapshotAlreadyFixed(AsOfError):
    sqlstate = "25001"


class UnsupportedQuery(AsOfError):
    sqlstate = "0A000"

    def __init__(
        self,
        message: str = "only SELECT queries are allowed",
        *,
        hint: Optional[str] = "The query must start with SELECT or WITH",
    ):
        super().__init__(message, hint=hint)


class InvalidArgument(AsOfError, ValueError):
    sqlstate = "22023"


class InternalError(AsOfError):
    sqlstate = "XX000"


# ----------------------------
# Snapshot text codec
# ----------------------------


@dataclass(frozen=True)
class SnapshotDescriptor:
    xmin: int
    xmax: int
    xip: Tuple[int, ...] = ()

    def to_text(self) -> str:
        return f"{self.xmin}:{self.xmax}:{','.join(str(x) for x in self.xip)}"

    def __str__(self) -> str:
        return self.to_text()


def _parse_xid(token: str, what: str) -> int:
    if token == "":
        raise MalformedSnapshot(f"malformed snapshot: missing {what}")
    if not _XID_RE.fullmatch(token):
        raise MalformedSnapshot(f"malformed snapshot: invalid {what} {token!r}")
    value = int(token)
    if value > MAX_XID:
        raise MalformedSnapshot(f"malformed snapshot: {what} {token} is out of range")
    return value


def parse_snapshot(text: Optional[str]) -> SnapshotDescriptor:
    """Parse "xmin:xmax:xip1,xip2,..." into a descriptor with a sorted, unique xip list."""
    if not text:
        raise MalformedSnapshot("malformed snapshot: empty snapshot text")

    parts = text.split(":")
    if len(parts) > 3:
        raise MalformedSnapshot(f"malformed snapshot: too many segments in {text!r}")
    if len(parts) < 2:
        raise MalformedSnapshot("malformed snapshot: missing xmax")

    xmin = _parse_xid(parts[0], "xmin")
    xmax = _parse_xid(parts[1], "xmax")
    if xmin > xmax:
        raise MalformedSnapshot(f"malformed snapshot: xmin {xmin} is greater than xmax {xmax}")

    xip = []
    if len(parts) == 3 and parts[2] != "":
        for token in parts[2].split(","):
            xid = _parse_xid(token, "in-progress id")
            if not (xmin <= xid < xmax):
                raise MalformedSnapshot(
                    f"malformed snapshot: in-progress id {xid} is outside [{xmin}, {xmax})"
                )
            xip.append(xid)
    xip.sort()
    for prev, cur in zip(xip, xip[1:]):
        if prev == cur:
            raise MalformedSnapshot(f"malformed snapshot: duplicate in-progress id {cur}")

    return SnapshotDescriptor(xmin=xmin, xmax=xmax, xip=tuple(xip))


# ----------------------------
# Synthetic snapshot builder
# ----------------------------


def build_synthetic_snapshot(
    base: Optional[SnapshotData], descriptor: SnapshotDescriptor
) -> SnapshotData:
    # The copy owns its xip tuple and starts unreferenced; subtransaction
    # state from the base never applies to a synthetic snapshot.
    if base is None:
        raise InternalError("no base snapshot available to build an asof snapshot from")
    return dataclasses.replace(
        base,
        xmin=descriptor.xmin,
        xmax=descriptor.xmax,
        xip=tuple(descriptor.xip),
        subxip=(),
        suboverflowed=False,
        copied=True,
        active_count=0,
        regd_count=0,
    )


# ----------------------------
# Guardrails
# ----------------------------


def check_installable(session: Session) -> None:
    if not session.in_transaction_block:
        raise NoActiveTransaction(
            "an asof snapshot can only be installed inside a transaction block",
            hint="Run BEGIN ISOLATION LEVEL REPEATABLE READ first.",
        )
    if not session.isolation.uses_transaction_snapshot:
        raise WrongIsolationLevel(
            "an asof snapshot requires isolation level REPEATABLE READ or SERIALIZABLE, "
            f"not {session.isolation.value.upper()}"
        )
    if session.in_subtransaction:
        raise InSubtransaction("an asof snapshot cannot be installed inside a subtransaction")
    if session.first_snapshot_set:
        raise SnapshotAlreadyFixed(
            "an asof snapshot must be installed before any query of the transaction"
        )


def ensure_installable(session: Session) -> SnapshotData:
    check_installable(session)
    return session.peek_snapshot()


# ----------------------------
# Transaction lifecycle tracking
# ----------------------------

BOUNDARY_EVENTS = frozenset(
    {
        XactEvent.COMMIT,
        XactEvent.PARALLEL_COMMIT,
        XactEvent.ABORT,
        XactEvent.PARALLEL_ABORT,
        XactEvent.PREPARE,
    }
)


@dataclass
class PendingInstallation:
    snapshot: SnapshotData
    lxid: int
    pending: bool = True


class InstallationTracker:
    """Per-session record of the asof snapshot staged for the current transaction."""

    def __init__(self):
        self._states: "weakref.WeakKeyDictionary[Session, PendingInstallation]" = weakref.WeakKeyDictionary()

    def get(self, session: Session) -> Optional[PendingInstallation]:
        return self._states.get(session)

    def stage(self, session: Session, snapshot: SnapshotData) -> PendingInstallation:
        state = PendingInstallation(snapshot=snapshot, lxid=session.lxid)
        self._states[session] = state
        logger.debug("staged asof snapshot %s for transaction %s", snapshot, session.lxid)
        return state

    def clear(self, session: Session) -> None:
        state = self._states.pop(session, None)
        if state is not None and state.pending:
            logger.debug("discarded staged asof snapshot %s", state.snapshot)

    def discard_pending(self, session: Session) -> None:
        state = self._states.get(session)
        if state is not None and state.pending:
            self.clear(session)

    def on_xact_event(self, event: XactEvent, session: Session) -> None:
        if event in BOUNDARY_EVENTS:
            self.clear(session)

    def install_pending(self, session: Session) -> Optional[SnapshotData]:
        state = self._states.get(session)
        if state is None or not state.pending:
            return None
        if state.lxid != session.lxid:
            raise InternalError(
                f"staged asof snapshot belongs to transaction {state.lxid}, not {session.lxid}"
            )
        check_installable(session)
        session.set_transaction_snapshot(state.snapshot)
        session.set_read_only()
        state.pending = False
        logger.debug("installed asof snapshot %s for transaction %s", state.snapshot, state.lxid)
        return state.snapshot


# ----------------------------
# Scoped query execution
# ----------------------------

ArgsInput = Union[None, str, bytes, Sequence[Any]]


def _coerce_arg(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidArgument(f"non-finite number in args array: {value!r}")
        value = Decimal(repr(value))
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise InvalidArgument(f"non-finite number in args array: {value}")
        return format(value, "f")
    raise InvalidArgument(
        f"unsupported JSON value type in args array: {type(value).__name__}"
    )


def coerce_args(args: ArgsInput) -> Tuple[Optional[str], ...]:
    if args is None:
        return ()
    if isinstance(args, (str, bytes)):
        try:
            args = json.loads(args, parse_float=Decimal)
        except ValueError as exc:
            raise InvalidArgument(f"args is not valid JSON: {exc}") from exc
        if args is None:
            return ()
    if not isinstance(args, (list, tuple)):
        raise InvalidArgument("args must be a JSON array")
    return tuple(_coerce_arg(v) for v in args)


def _strip_terminator(sql: str) -> str:
    return sql.rstrip().rstrip(";").rstrip()


@contextmanager
def _as_of_scope(session: Session, snapshot: SnapshotData) -> Iterator[SpiConnection]:
    spi = session.spi_connect()
    try:
        session.push_active_snapshot(snapshot)
        try:
            yield spi
        finally:
            session.pop_active_snapshot()
    finally:
        spi.finish()


def exec_as_of(
    session: Session,
    snapshot: Union[str, SnapshotData],
    sql: str,
    args: ArgsInput = None,
) -> Any:
    """
    Run one read-only query under the snapshot `snapshot` and return its rows
    as a JSON array of objects.

    The snapshot is active only for this call; the transaction snapshot and
    the active snapshot stack are left as they were.
    """
    if not is_read_only_query(sql):
        raise UnsupportedQuery()

    text = snapshot.to_text() if isinstance(snapshot, SnapshotData) else snapshot
    descriptor = parse_snapshot(text)
    params = coerce_args(args)

    base = session.get_transaction_snapshot() if session.in_transaction else None
    synthetic = build_synthetic_snapshot(base, descriptor)
    query = _strip_terminator(sql)

    with _as_of_scope(session, synthetic) as spi:
        logger.debug("executing as of %s: %s", descriptor, query)
        try:
            columns = spi.describe(query, params)
            result = spi.execute(json_aggregate_sql(query, columns), params, read_only=True)
        except EngineError as exc:
            raise InternalError(f"asof query failed: {exc}") from exc
        if result.status is not SpiStatus.OK_SELECT:
            raise InternalError(f"asof query returned unexpected status {result.status.name}")
        if result.processed != 1:
            raise InternalError(f"expected 1 result row, got {result.processed}")
        value = result.rows[0][0]

    if value is None:
        return []
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return value


# ----------------------------
# Extension
# ----------------------------


class AsOfExtension:
    def __init__(
        self,
        variable_name: str = "asof.snapshot",
        function_name: str = "asof_exec_as_of",
    ):
        self.variable_name = variable_name
        self.function_name = function_name
        self.tracker = InstallationTracker()
        self._db: Optional[Database] = None

    @property
    def loaded(self) -> bool:
        return self._db is not None

    def load(self, db: Database) -> "AsOfExtension":
        if self._db is not None:
            raise RuntimeError("asof extension is already loaded")
        db.define_variable(
            self.variable_name,
            "",
            check_hook=self._check_snapshot,
            assign_hook=self._assign_snapshot,
        )
        db.register_query_start_hook(self._on_query_start)
        db.register_xact_callback(self.tracker.on_xact_event)
        db.register_function(self.function_name, exec_as_of)
        self._db = db
        logger.info("asof extension loaded (variable=%s, function=%s)", self.variable_name, self.function_name)
        return self

    def unload(self) -> None:
        db = self._db
        if db is None:
            return
        db.unregister_function(self.function_name)
        db.unregister_xact_callback(self.tracker.on_xact_event)
        db.unregister_query_start_hook(self._on_query_start)
        db.undefine_variable(self.variable_name)
        self._db = None
        logger.info("asof extension unloaded")

    def _check_snapshot(self, session: Session, value: str) -> Optional[SnapshotData]:
        if not value:
            return None
        base = ensure_installable(session)
        return build_synthetic_snapshot(base, parse_snapshot(value))

    def _assign_snapshot(self, session: Session, value: str, snapshot: Optional[SnapshotData]) -> None:
        if snapshot is None:
            self.tracker.discard_pending(session)
        else:
            self.tracker.stage(session, snapshot)

    def _on_query_start(self, session: Session, query: QueryDesc) -> None:
        self.tracker.install_pending(session)

    def set_snapshot(self, session: Session, snapshot: Union[str, SnapshotData, None]) -> None:
        if isinstance(snapshot, SnapshotData):
            snapshot = snapshot.to_text()
        session.set(self.variable_name, snapshot or "")

    def pending(self, session: Session) -> Optional[PendingInstallation]:
        return self.tracker.get(session)

    def exec_as_of(
        self,
        session: Session,
        snapshot: Union[str, SnapshotData],
        sql: str,
        args: ArgsInput = None,
    ) -> Any:
        return session.invoke(self.function_name, snapshot, sql, args)
