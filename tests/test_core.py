import pytest

from asof import (
    AsOfExtension,
    InSubtransaction,
    InstallationTracker,
    InternalError,
    MalformedSnapshot,
    NoActiveTransaction,
    SnapshotAlreadyFixed,
    SnapshotData,
    SnapshotDescriptor,
    WrongIsolationLevel,
    build_synthetic_snapshot,
    ensure_installable,
    parse_snapshot,
)
from asof.core import MAX_XID
from asof.engine import InFailedTransaction, ReadOnlyTransaction, UndefinedObject, XactEvent

# ----------------------------
# Snapshot text codec
# ----------------------------


def test_parse_sorts_in_progress_ids():
    d = parse_snapshot("100:200:150,120,199")
    assert d == SnapshotDescriptor(xmin=100, xmax=200, xip=(120, 150, 199))
    assert d.to_text() == "100:200:120,150,199"
    assert parse_snapshot(d.to_text()) == d


def test_parse_equal_bounds_with_empty_list():
    d = parse_snapshot("100:100:")
    assert (d.xmin, d.xmax, d.xip) == (100, 100, ())


def test_parse_third_segment_is_optional():
    assert parse_snapshot("5:9") == SnapshotDescriptor(5, 9, ())
    assert parse_snapshot("5:9:") == SnapshotDescriptor(5, 9, ())


def test_parse_accepts_full_xid_range():
    d = parse_snapshot(f"0:{MAX_XID}:{MAX_XID - 1}")
    assert d.xip == (MAX_XID - 1,)


@pytest.mark.parametrize(
    "text",
    [
        None,
        "",
        "100",
        "100:90:",
        "100:200:150,120,150",
        "100:200:250",
        "100:200:99",
        "100:200:200",
        "abc:200:",
        "100::",
        ":200:",
        "100:200:150:extra",
        "100:200:150,",
        "100:200:,150",
        "100:200:1x0",
        "-1:200:",
        "+1:200:",
        " 100:200:",
        "100:200\n",
        "100:200:150\n",
        "100\n:200:",
        f"0:{MAX_XID + 1}:",
    ],
)
def test_parse_rejects_malformed(text):
    with pytest.raises(MalformedSnapshot) as ei:
        parse_snapshot(text)
    assert ei.value.sqlstate == "22023"
    assert isinstance(ei.value, ValueError)


def test_parse_error_names_the_problem():
    with pytest.raises(MalformedSnapshot, match="duplicate in-progress id 150"):
        parse_snapshot("100:200:150,120,150")
    with pytest.raises(MalformedSnapshot, match="missing xmax"):
        parse_snapshot("100::")


# ----------------------------
# Synthetic snapshot builder
# ----------------------------


def test_build_overlays_descriptor_on_base():
    base = SnapshotData(
        xmin=5, xmax=10, xip=(6,), subxip=(7,), suboverflowed=True, curcid=3, active_count=2, regd_count=1
    )
    snap = build_synthetic_snapshot(base, parse_snapshot("100:200:150,120"))

    assert (snap.xmin, snap.xmax, snap.xip) == (100, 200, (120, 150))
    assert snap.subxip == ()
    assert snap.suboverflowed is False
    assert snap.curcid == 3
    assert snap.copied is True
    assert (snap.active_count, snap.regd_count) == (0, 0)

    assert (base.xmin, base.xmax, base.xip, base.active_count) == (5, 10, (6,), 2)
    assert snap is not base


def test_build_without_base_fails():
    with pytest.raises(InternalError, match="no base snapshot"):
        build_synthetic_snapshot(None, parse_snapshot("1:2:"))


# ----------------------------
# Guardrails and the session variable
# ----------------------------


def test_install_outside_transaction_block_fails(session, ext):
    with pytest.raises(NoActiveTransaction) as ei:
        session.set(ext.variable_name, "100:200:")
    assert ei.value.sqlstate == "25P01"
    assert ext.pending(session) is None
    assert not session.in_transaction


def test_install_under_read_committed_fails(session, ext):
    session.begin()
    with pytest.raises(WrongIsolationLevel):
        session.set(ext.variable_name, "100:200:")
    session.rollback()


def test_install_inside_savepoint_fails(session, ext):
    session.begin("repeatable read")
    session.savepoint("sp1")
    with pytest.raises(InSubtransaction):
        session.set(ext.variable_name, "100:200:")
    session.rollback()


def test_install_after_first_query_fails(session, ext):
    session.begin("repeatable read")
    session.execute("SELECT 1")
    with pytest.raises(SnapshotAlreadyFixed):
        session.set(ext.variable_name, "100:200:")
    with pytest.raises(InFailedTransaction):
        session.execute("SELECT 1")
    session.rollback()


def test_install_rejects_malformed_text(session, ext):
    session.begin("serializable")
    with pytest.raises(MalformedSnapshot):
        session.set(ext.variable_name, "100:90:")
    session.rollback()
    assert ext.pending(session) is None


def test_ensure_installable_returns_base_without_fixing(session):
    session.begin("repeatable read")
    base = ensure_installable(session)
    assert isinstance(base, SnapshotData)
    assert not session.first_snapshot_set
    session.rollback()


def test_staged_snapshot_installs_at_first_query(db, session, ext, acl):
    writer = db.connect()
    writer.insert(acl, {"user_id": 1, "doc_id": 1, "allowed": True})

    session.begin("repeatable read")
    session.set(ext.variable_name, "1:3:")
    state = ext.pending(session)
    assert state.pending and state.lxid == session.lxid
    assert session.show(ext.variable_name) == "1:3:"

    # Nothing committed before xid 3, so the row is not visible yet.
    assert session.execute("SELECT * FROM acl").rows == []
    assert not ext.pending(session).pending
    assert session.get_transaction_snapshot().to_text() == "1:3:"
    assert session.read_only

    with pytest.raises(ReadOnlyTransaction):
        session.insert(acl, {"user_id": 2, "doc_id": 2, "allowed": False})
    session.rollback()

    assert len(writer.execute("SELECT * FROM acl").rows) == 1
    writer.close()


def test_resetting_variable_clears_pending_snapshot(session, ext):
    session.begin("repeatable read")
    session.set(ext.variable_name, "100:200:")
    assert ext.pending(session) is not None
    session.set(ext.variable_name, "")
    assert ext.pending(session) is None
    assert session.execute("SELECT 1").rows == [(1,)]
    assert session.get_transaction_snapshot().to_text() != "100:200:"
    session.rollback()


def test_setting_again_before_first_query_replaces_snapshot(session, ext):
    session.begin("repeatable read")
    session.set(ext.variable_name, "100:200:")
    session.set(ext.variable_name, "150:300:160")
    session.execute("SELECT 1")
    assert session.get_transaction_snapshot().to_text() == "150:300:160"
    session.rollback()


def test_set_snapshot_accepts_engine_snapshot(session, ext):
    session.begin("repeatable read")
    ext.set_snapshot(session, SnapshotData(xmin=150, xmax=300, xip=(160, 170)))
    assert session.show(ext.variable_name) == "150:300:160,170"
    assert ext.pending(session).snapshot.xip == (160, 170)

    ext.set_snapshot(session, None)
    assert session.show(ext.variable_name) == ""
    assert ext.pending(session) is None

    ext.set_snapshot(session, "100:200:")
    session.execute("SELECT 1")
    assert session.get_transaction_snapshot().to_text() == "100:200:"
    session.rollback()


def test_savepoint_between_set_and_query_blocks_installation(session, ext):
    session.begin("repeatable read")
    session.set(ext.variable_name, "100:200:")
    session.savepoint("sp1")
    with pytest.raises(InSubtransaction):
        session.execute("SELECT 1")
    session.rollback()


@pytest.mark.parametrize("finish", ["commit", "rollback", "prepare"])
def test_boundary_discards_staged_snapshot(session, ext, finish):
    session.begin("repeatable read")
    session.set(ext.variable_name, "100:200:")
    assert ext.pending(session).pending

    if finish == "commit":
        session.commit()
    elif finish == "rollback":
        session.rollback()
    else:
        session.prepare_transaction("gid-1")

    assert ext.pending(session) is None
    session.begin("repeatable read")
    session.execute("SELECT 1")
    assert session.get_transaction_snapshot().to_text() != "100:200:"
    session.commit()


def test_tracker_reacts_only_to_boundary_events(session):
    tracker = InstallationTracker()
    session.begin("repeatable read")
    tracker.stage(session, build_synthetic_snapshot(session.peek_snapshot(), parse_snapshot("1:2:")))

    tracker.on_xact_event(XactEvent.PRE_COMMIT, session)
    tracker.on_xact_event(XactEvent.PRE_PREPARE, session)
    assert tracker.get(session) is not None

    tracker.on_xact_event(XactEvent.PARALLEL_ABORT, session)
    assert tracker.get(session) is None
    session.rollback()


def test_tracker_refuses_snapshot_from_other_transaction(session):
    tracker = InstallationTracker()
    session.begin("repeatable read")
    tracker.stage(session, build_synthetic_snapshot(session.peek_snapshot(), parse_snapshot("1:2:")))
    session.commit()

    session.begin("repeatable read")
    with pytest.raises(InternalError, match="belongs to transaction"):
        tracker.install_pending(session)
    session.rollback()


def test_pending_state_is_per_session(db, ext):
    a = db.connect()
    b = db.connect()
    a.begin("repeatable read")
    a.set(ext.variable_name, "100:200:")
    assert ext.pending(a) is not None
    assert ext.pending(b) is None
    a.rollback()
    a.close()
    b.close()


def test_unload_removes_registrations(db):
    ext = AsOfExtension().load(db)
    s = db.connect()
    ext.unload()
    assert not ext.loaded

    with pytest.raises(UndefinedObject):
        s.set("asof.snapshot", "1:2:")
    with pytest.raises(UndefinedObject):
        s.invoke("asof_exec_as_of", "1:2:", "SELECT 1 AS a", None)
    s.close()


def test_load_twice_is_rejected(db, ext):
    with pytest.raises(RuntimeError, match="already loaded"):
        ext.load(db)
