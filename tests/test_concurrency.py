import threading

import pytest
from sqlalchemy import text

from orgtree.core.exceptions import ConcurrentModificationError, RebuildInProgressError
from orgtree.models.department import Department
from orgtree.schemas.department import DepartmentCreate
from orgtree.services.collaborators import NullCacheInvalidator
from orgtree.services.guard import StructureGuard
from orgtree.services.hierarchy_service import HierarchyService
from orgtree.services.node_store import SqlAlchemyNodeStore
from orgtree.services.validator import ConsistencyValidator


class RacingNodeStore(SqlAlchemyNodeStore):
    """
    Simulates another writer touching `victim_id` right after the subtree
    snapshot is taken, so the version check fails at write time.
    """

    def __init__(self, session, victim_id, races=1):
        super().__init__(session)
        self.victim_id = victim_id
        self.races_left = races
        self.scans = 0

    def scan_by_path_prefix(self, prefix, lock=False):
        rows = super().scan_by_path_prefix(prefix, lock=lock)
        self.scans += 1
        if self.races_left:
            self.races_left -= 1
            self.session.execute(
                text("UPDATE departments SET version = version + 1 WHERE id = :id"),
                {"id": self.victim_id},
            )
        return rows


def _snapshot(db_session):
    db_session.expire_all()
    return {row.id: (row.parent_id, row.path, row.level) for row in db_session.query(Department).all()}


def _service(db_session, store, guard, max_attempts=3):
    return HierarchyService(db_session, store=store, guard=guard, max_attempts=max_attempts, retry_wait=0)


def test_stale_snapshot_is_retried(db_session, guard, sample_tree):
    store = RacingNodeStore(db_session, victim_id=sample_tree["G1"].id, races=1)
    _service(db_session, store, guard).move(sample_tree["C1"].id, sample_tree["R2"].id)

    assert store.scans == 2
    tree = _snapshot(db_session)
    assert tree[2] == (4, "/4/2", 1)
    assert tree[3] == (2, "/4/2/3", 2)


def test_persistent_conflict_surfaces_and_leaves_tree_unchanged(db_session, guard, sample_tree):
    before = _snapshot(db_session)
    store = RacingNodeStore(db_session, victim_id=sample_tree["C1"].id, races=10)

    with pytest.raises(ConcurrentModificationError) as exc:
        _service(db_session, store, guard, max_attempts=3).move(sample_tree["C1"].id, sample_tree["R2"].id)

    assert exc.value.retryable
    assert store.scans == 3
    assert _snapshot(db_session) == before


def test_move_refused_while_rebuild_runs(db_session, guard, sample_tree):
    service = _service(db_session, SqlAlchemyNodeStore(db_session), guard)
    with guard.exclusive():
        with pytest.raises(RebuildInProgressError) as exc:
            service.move(sample_tree["C1"].id, sample_tree["R2"].id)
    assert exc.value.status_code == 423
    assert _snapshot(db_session)[2][1] == "/1/2"


def test_rebuild_refused_while_move_runs(db_session, guard, sample_tree):
    service = _service(db_session, SqlAlchemyNodeStore(db_session), guard)
    with guard.shared():
        with pytest.raises(RebuildInProgressError):
            service.rebuild_paths()
    # Guard released: rebuild proceeds
    assert service.rebuild_paths().roots_processed == 2


def test_guard_admits_concurrent_moves(guard):
    entered = threading.Barrier(2, timeout=5)
    errors = []

    def hold_shared():
        try:
            with guard.shared():
                entered.wait()
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=hold_shared) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert not guard.rebuilding


class RacingLockStore(SqlAlchemyNodeStore):
    """
    Simulates another writer committing to `victim_id` right after this
    store has read it, so writes that depend on the row fail their version check.
    """

    def __init__(self, session, victim_id, races=1):
        super().__init__(session)
        self.victim_id = victim_id
        self.races_left = races
        self.locks = 0

    def get_for_update(self, department_id):
        row = super().get_for_update(department_id)
        if department_id == self.victim_id:
            self.locks += 1
            if self.races_left:
                self.races_left -= 1
                self.session.execute(
                    text("UPDATE departments SET version = version + 1 WHERE id = :id"),
                    {"id": self.victim_id},
                )
        return row


class ChildCheckRacingStore(SqlAlchemyNodeStore):
    """Bumps the parent's version once the remaining children have been counted."""

    def __init__(self, session, parent_id):
        super().__init__(session)
        self.parent_id = parent_id

    def exists_by_parent(self, parent_id):
        found = super().exists_by_parent(parent_id)
        if parent_id == self.parent_id:
            self.session.execute(
                text("UPDATE departments SET version = version + 1 WHERE id = :id"),
                {"id": parent_id},
            )
        return found


def _worker(session, store=None):
    return HierarchyService(
        session,
        store=store,
        guard=StructureGuard(),
        invalidator=NullCacheInvalidator(),
        max_attempts=3,
        retry_wait=0,
    )


def _violations(session):
    session.expire_all()
    return ConsistencyValidator(SqlAlchemyNodeStore(session)).find_violations()


def _seed(service):
    """R1 (1) > C1 (2) > G1 (3), R2 (4)"""
    r1 = service.create(None, DepartmentCreate(code="R1", name="Root One"))
    c1 = service.create(r1.id, DepartmentCreate(code="C1", name="Child One"))
    service.create(c1.id, DepartmentCreate(code="G1", name="Grandchild One"))
    service.create(None, DepartmentCreate(code="R2", name="Root Two"))


def test_create_parent_is_retried_when_changed_concurrently(db_session, guard, sample_tree):
    store = RacingLockStore(db_session, victim_id=sample_tree["C1"].id, races=1)
    created = _service(db_session, store, guard).create(
        sample_tree["C1"].id, DepartmentCreate(code="X1", name="Extra")
    )

    assert store.locks == 2
    assert created.path == f"/1/2/{created.id}"
    assert _violations(db_session) == []


def test_create_persistent_parent_conflict_leaves_nothing_behind(db_session, guard, sample_tree):
    store = RacingLockStore(db_session, victim_id=sample_tree["C1"].id, races=10)

    with pytest.raises(ConcurrentModificationError):
        _service(db_session, store, guard, max_attempts=3).create(
            sample_tree["C1"].id, DepartmentCreate(code="X1", name="Extra")
        )

    assert store.locks == 3
    db_session.expire_all()
    assert db_session.query(Department).filter_by(code="X1").first() is None


def test_create_bumps_parent_version(service, db_session, sample_tree):
    before = db_session.get(Department, sample_tree["C1"].id).version
    service.create(sample_tree["C1"].id, DepartmentCreate(code="X1", name="Extra"))
    db_session.expire_all()
    assert db_session.get(Department, sample_tree["C1"].id).version == before + 1


def test_delete_conflicts_with_concurrent_write_to_parent(db_session, guard, sample_tree):
    store = ChildCheckRacingStore(db_session, parent_id=sample_tree["C1"].id)

    with pytest.raises(ConcurrentModificationError):
        _service(db_session, store, guard).delete(sample_tree["G1"].id)

    db_session.expire_all()
    assert db_session.get(Department, sample_tree["G1"].id) is not None
    assert db_session.get(Department, sample_tree["C1"].id).has_children is True
    assert _violations(db_session) == []


def test_create_under_parent_moved_by_another_session(two_sessions):
    session_a, session_b = two_sessions
    worker_a, worker_b = _worker(session_a), _worker(session_b)
    _seed(worker_a)

    # B holds C1 at its old path while A moves it
    assert session_b.get(Department, 2).path == "/1/2"
    worker_a.move(2, 4)

    created = worker_b.create(2, DepartmentCreate(code="X1", name="Extra"))

    assert created.path == "/4/2/5"
    assert created.level == 2
    assert _violations(session_a) == []


def test_move_into_parent_moved_by_another_session(two_sessions):
    session_a, session_b = two_sessions
    worker_a, worker_b = _worker(session_a), _worker(session_b)
    _seed(worker_a)
    worker_a.create(None, DepartmentCreate(code="Y1", name="Loose Root"))

    assert session_b.get(Department, 2).path == "/1/2"
    assert session_b.get(Department, 5).path == "/5"
    worker_a.move(2, 4)

    worker_b.move(5, 2)

    session_a.expire_all()
    moved = session_a.get(Department, 5)
    assert (moved.parent_id, moved.path, moved.level) == (2, "/4/2/5", 2)
    assert _violations(session_a) == []


def test_delete_after_another_session_added_a_sibling(two_sessions):
    session_a, session_b = two_sessions
    worker_a, worker_b = _worker(session_a), _worker(session_b)
    _seed(worker_a)

    # B has C1 cached with one child; A adds a second one
    assert session_b.get(Department, 2).has_children is True
    worker_a.create(2, DepartmentCreate(code="G2", name="Grandchild Two"))

    worker_b.delete(3)

    session_a.expire_all()
    assert session_a.get(Department, 2).has_children is True
    assert _violations(session_a) == []


class InterleavingNodeStore(SqlAlchemyNodeStore):
    """Runs `interleave` once, the first time the children of `parent_id` are listed."""

    def __init__(self, session, parent_id, interleave):
        super().__init__(session)
        self.parent_id = parent_id
        self.interleave = interleave

    def get_by_parent(self, parent_id):
        if parent_id == self.parent_id and self.interleave is not None:
            interleave, self.interleave = self.interleave, None
            interleave()
        return super().get_by_parent(parent_id)


def test_rebuild_and_move_in_separate_processes_do_not_mix_paths(two_sessions):
    session_a, session_b = two_sessions
    worker_a = _worker(session_a)
    _seed(worker_a)

    # Each side has its own guard, so only the row versions keep them apart
    store_b = InterleavingNodeStore(session_b, parent_id=2, interleave=lambda: worker_a.move(3, 4))
    with pytest.raises(ConcurrentModificationError):
        _worker(session_b, store=store_b).rebuild_paths()

    session_a.expire_all()
    grandchild = session_a.get(Department, 3)
    assert (grandchild.parent_id, grandchild.path) == (4, "/4/3")
    assert _violations(session_a) == []
