import pytest

from asof import CommitHistory, CommitRecord, SnapshotDescriptor, SQLiteCommitStore, snapshot_after_commit
from asof.engine import FIRST_NORMAL_XID


def _make_items(db):
    db.create_table("items", {"id": "int64"})


def test_snapshot_after_commit_without_concurrency():
    assert snapshot_after_commit(10, set()).to_text() == "11:11:"
    assert snapshot_after_commit(10, {10}).to_text() == "11:11:"


def test_snapshot_after_commit_keeps_in_flight_invisible():
    d = snapshot_after_commit(10, {12, 8, 10})
    assert d == SnapshotDescriptor(xmin=8, xmax=13, xip=(8, 12))


def test_snapshot_after_commit_carries_latest_completed():
    assert snapshot_after_commit(3, set(), latest_completed=4).to_text() == "5:5:"
    assert snapshot_after_commit(3, {6}, latest_completed=4).to_text() == "6:7:6"


def test_history_tracks_interleaved_commits(db):
    _make_items(db)
    a = db.connect()
    b = db.connect()
    history = CommitHistory(db).attach()

    a.begin()
    a.insert("items", {"id": 1})
    b.insert("items", {"id": 2})
    assert history.in_flight == {FIRST_NORMAL_XID}
    a.commit()

    first, second = history.records
    assert (first.seq, first.xid) == (1, FIRST_NORMAL_XID + 1)
    assert first.snapshot_text == f"{FIRST_NORMAL_XID}:{FIRST_NORMAL_XID + 2}:{FIRST_NORMAL_XID}"
    assert (second.seq, second.xid) == (2, FIRST_NORMAL_XID)
    assert second.snapshot_text == f"{FIRST_NORMAL_XID + 2}:{FIRST_NORMAL_XID + 2}:"
    assert history.latest() == second
    assert history.in_flight == set()


def test_history_ignores_aborted_transactions(db):
    _make_items(db)
    s = db.connect()
    with CommitHistory(db) as history:
        s.begin()
        s.insert("items", {"id": 1})
        s.rollback()
        s.insert("items", {"id": 2})
        assert [r.seq for r in history.records] == [1]
        assert history.in_flight == set()

    s.insert("items", {"id": 3})
    assert len(history.records) == 1


def test_history_lookup_errors(db):
    history = CommitHistory(db).attach()
    assert history.latest() is None
    with pytest.raises(LookupError):
        history.nth(1)
    with pytest.raises(LookupError, match="wanted #2"):
        history.wait_for(2)
    with pytest.raises(ValueError):
        history.nth(0)
    history.detach()


def test_wait_for_returns_known_commit(db):
    _make_items(db)
    history = CommitHistory(db).attach()
    db.connect().insert("items", {"id": 1})
    assert history.wait_for(1, timeout=0.5).xid == FIRST_NORMAL_XID
    history.detach()


def test_store_persists_records(db, tmp_path):
    _make_items(db)
    store = SQLiteCommitStore(tmp_path / "state" / "commits.db")
    history = CommitHistory(db, store=store).attach()
    s = db.connect()
    s.insert("items", {"id": 1})
    s.insert("items", {"id": 2})
    history.detach()

    reopened = SQLiteCommitStore(tmp_path / "state" / "commits.db")
    assert reopened.all() == history.records
    assert reopened.get(2) == history.nth(2)
    assert reopened.get(99) is None
    assert reopened.last_seq() == 2

    resumed = CommitHistory(db, store=reopened).attach()
    s.insert("items", {"id": 3})
    assert resumed.latest().seq == 3
    assert [r.seq for r in reopened.all()] == [1, 2, 3]
    resumed.detach()


def test_record_dict_round_trip():
    rec = CommitRecord(seq=4, xid=9, snapshot=SnapshotDescriptor(7, 10, (7,)), committed_at=12.5)
    d = rec.to_dict()
    assert d["snapshot"] == "7:10:7"
    assert CommitRecord.from_dict(d) == rec
