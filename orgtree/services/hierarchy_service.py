"""
Hierarchy Service Layer

The only component that writes to the department tree. Every operation
validates through ConsistencyValidator, mutates through the node store inside
a single transaction, and notifies the cache invalidator after commit.

Architecture:
- Caller -> HierarchyService (this module) -> NodeStore
- path / level / has_children are computed here and never taken from callers
- Writes are optimistic: every row a write depends on (including parents it
  only reads a path from) is version-checked, and a stale snapshot is
  retried a bounded number of times
"""
from collections import deque
from typing import List, Optional, Set, Tuple

from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from orgtree.core.config import settings
from orgtree.core.exceptions import ConcurrentModificationError
from orgtree.core.logging import request_context
from orgtree.models.department import Department
from orgtree.schemas.department import (
    DepartmentCreate,
    DepartmentResponse,
    DepartmentUpdate,
    PathUpdate,
    RebuildReport,
)
from orgtree.services import path_codec
from orgtree.services.base import BaseService
from orgtree.services.cache import get_default_cache
from orgtree.services.collaborators import (
    CacheInvalidator,
    EmployeeDirectory,
    NullCacheInvalidator,
    NullEmployeeDirectory,
)
from orgtree.services.guard import StructureGuard, default_guard
from orgtree.services.node_store import NodeStore, SqlAlchemyNodeStore
from orgtree.services.validator import ConsistencyValidator

# Columns that reject NULL; an explicit None in an update is ignored for them
_REQUIRED_FIELDS = {"name", "code", "sort_order", "enabled"}


class HierarchyService(BaseService):
    """Create, update, move, delete and rebuild departments."""

    def __init__(
        self,
        db: Session,
        actor_id: Optional[int] = None,
        directory: Optional[EmployeeDirectory] = None,
        invalidator: Optional[CacheInvalidator] = None,
        store: Optional[NodeStore] = None,
        guard: Optional[StructureGuard] = None,
        max_attempts: Optional[int] = None,
        retry_wait: Optional[float] = None,
    ):
        super().__init__(db, actor_id)
        self.store = store or SqlAlchemyNodeStore(db)
        self.directory = directory or NullEmployeeDirectory()
        self.validator = ConsistencyValidator(self.store, self.directory)
        self.invalidator = invalidator or get_default_cache() or NullCacheInvalidator()
        self.guard = guard or default_guard
        self.max_attempts = max_attempts or settings.move_max_attempts
        self.retry_wait = settings.move_retry_wait_seconds if retry_wait is None else retry_wait

    # ------------------------------------------------------------------
    # Create / update
    # ------------------------------------------------------------------
    def create(self, parent_id: Optional[int], fields: DepartmentCreate) -> DepartmentResponse:
        """
        Create a department under `parent_id` (None for a new root).

        The id is allocated by the store first, then path and level are
        derived from the resolved parent in the same transaction. The parent
        row is version-checked on write, so a parent moved meanwhile fails
        the attempt instead of leaving a stale path; such attempts are retried.
        """
        with request_context():
            for attempt in self._retrying():
                with attempt:
                    node = self._create_once(parent_id, fields)

            self.log_info(f"Department created: {node.code} (ID: {node.id}, path: {node.path})")
            self._invalidate(parent_id)
        return DepartmentResponse.model_validate(node)

    def _create_once(self, parent_id: Optional[int], fields: DepartmentCreate) -> Department:
        with self.store.transaction():
            parent = self.validator.validate_create(parent_id, fields.code)
            self.validator.validate_manager(fields.manager_id)

            node = Department(
                **fields.model_dump(),
                parent_id=parent_id,
                level=0,
                has_children=False,
                created_by=self.actor_id,
                updated_by=self.actor_id,
            )
            self.store.create(node)

            node.path = path_codec.child_path(parent.path if parent else None, node.id)
            node.level = path_codec.depth(node.path)
            if parent is not None:
                if not parent.has_children:
                    parent.has_children = True
                    parent.updated_by = self.actor_id
                self.store.touch(parent)
            self.store.save(node)
        return node

    def update(self, department_id: int, fields: DepartmentUpdate) -> DepartmentResponse:
        """Apply non-structural changes. Path and level are never touched here."""
        changes = {
            key: value
            for key, value in fields.model_dump(exclude_unset=True).items()
            if value is not None or key not in _REQUIRED_FIELDS
        }

        with self.store.transaction():
            node = self.validator.require(department_id)
            if "code" in changes and changes["code"] != node.code:
                self.validator.validate_code_change(department_id, changes["code"])
            if changes.get("manager_id") is not None and changes["manager_id"] != node.manager_id:
                self.validator.validate_manager(changes["manager_id"])

            for key, value in changes.items():
                setattr(node, key, value)
            node.updated_by = self.actor_id
            self.store.save(node)

        self.log_info(f"Department updated: {node.code} (ID: {department_id}), fields: {sorted(changes)}")
        self._invalidate(department_id)
        return DepartmentResponse.model_validate(node)

    def set_enabled(self, department_id: int, enabled: bool) -> DepartmentResponse:
        return self.update(department_id, DepartmentUpdate(enabled=enabled))

    def update_sort_order(self, department_id: int, sort_order: int) -> DepartmentResponse:
        return self.update(department_id, DepartmentUpdate(sort_order=sort_order))

    # ------------------------------------------------------------------
    # Move
    # ------------------------------------------------------------------
    def move(self, department_id: int, new_parent_id: Optional[int]) -> None:
        """
        Re-parent a department and rewrite the path of its whole subtree.

        Raises:
            NodeNotFound, ParentNotFound: unknown ids
            CircularReferenceError: target is the node itself or inside its subtree
            ConcurrentModificationError: the snapshot stayed stale for every attempt
            RebuildInProgressError: a path rebuild is running
        """
        with request_context():
            with self.guard.shared():
                for attempt in self._retrying():
                    with attempt:
                        moved, old_parent_id, rewritten = self._move_once(department_id, new_parent_id)

            if not moved:
                self._logger.debug(f"Department {department_id} already under {new_parent_id}; nothing to move")
                return

            self.log_info(
                f"Department {department_id} moved from {old_parent_id} to {new_parent_id}, "
                f"{rewritten} path(s) rewritten"
            )
            self._invalidate(department_id)
            self._invalidate(old_parent_id)
            self._invalidate(new_parent_id)

    def _move_once(self, department_id: int, new_parent_id: Optional[int]) -> Tuple[bool, Optional[int], int]:
        with self.store.transaction():
            node, new_parent = self.validator.validate_move(department_id, new_parent_id)
            old_parent_id = node.parent_id
            if old_parent_id == new_parent_id:
                return False, old_parent_id, 0

            # Snapshot of the subtree; every row in it is version-checked on write
            old_path = node.path
            descendants = self.store.scan_by_path_prefix(old_path, lock=True)

            new_path = path_codec.child_path(new_parent.path if new_parent else None, node.id)
            updates = [PathUpdate(id=node.id, path=new_path, level=path_codec.depth(new_path))]
            for descendant in descendants:
                rebased = path_codec.rebase(descendant.path, old_path, new_path)
                updates.append(PathUpdate(id=descendant.id, path=rebased, level=path_codec.depth(rebased)))

            node.parent_id = new_parent_id
            node.updated_by = self.actor_id
            rewritten = self.store.batch_update_path_level(updates, actor_id=self.actor_id)

            # Both parents are written so that a racing create, move or delete
            # touching either of them fails one side's version check
            if old_parent_id is not None:
                old_parent = self.store.get_for_update(old_parent_id)
                if old_parent is not None:
                    still_has_children = self.store.exists_by_parent(old_parent_id)
                    if old_parent.has_children != still_has_children:
                        old_parent.has_children = still_has_children
                        old_parent.updated_by = self.actor_id
                    self.store.touch(old_parent)
            if new_parent is not None:
                if not new_parent.has_children:
                    new_parent.has_children = True
                    new_parent.updated_by = self.actor_id
                self.store.touch(new_parent)
            self.store.save(node)

        return True, old_parent_id, rewritten

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------
    def delete(self, department_id: int) -> None:
        """Delete a childless department with no assigned employees."""
        with request_context():
            with self.store.transaction():
                node = self.validator.validate_delete(department_id)
                parent_id = node.parent_id
                code = node.code
                self.store.delete(department_id)

                if parent_id is not None:
                    parent = self.store.get_for_update(parent_id)
                    if parent is not None:
                        still_has_children = self.store.exists_by_parent(parent_id)
                        if parent.has_children != still_has_children:
                            parent.has_children = still_has_children
                            parent.updated_by = self.actor_id
                        self.store.touch(parent)

            self.log_info(f"Department deleted: {code} (ID: {department_id})")
            self._invalidate(department_id)
            self._invalidate(parent_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def rebuild_paths(self, stop_event=None) -> RebuildReport:
        """
        Recompute path, level and has_children for the whole tree from the
        parent links, breadth-first from every root.

        Each root's subtree is rewritten in its own transaction, so readers
        see a subtree either before or after its rewrite. `stop_event` (any
        object with `is_set()`) is checked between subtrees. Nodes that no
        root reaches are reported and left alone.
        """
        with request_context(), self.guard.exclusive():
            root_ids = [root.id for root in self.store.get_by_parent(None)]
            report = RebuildReport(total_roots=len(root_ids))
            self.log_info(f"Rebuilding department paths for {len(root_ids)} root(s)")

            reached: Set[int] = set()
            for root_id in root_ids:
                if stop_event is not None and stop_event.is_set():
                    report.interrupted = True
                    self.log_warning(
                        f"Path rebuild interrupted after {report.roots_processed}/{report.total_roots} root(s)"
                    )
                    break

                with self.store.transaction():
                    visited, paths_written, flags_written = self._rebuild_subtree(root_id)
                reached |= visited
                report.roots_processed += 1
                report.nodes_updated += paths_written
                report.flags_updated += flags_written
                if paths_written or flags_written:
                    self._invalidate(root_id)

            report.nodes_visited = len(reached)
            if not report.interrupted:
                report.unreachable_ids = sorted({node.id for node in self.store.list_all()} - reached)
                if report.unreachable_ids:
                    self.log_warning(
                        f"{len(report.unreachable_ids)} department(s) unreachable from any root: "
                        f"{report.unreachable_ids[:20]}"
                    )

            self.log_info(
                f"Department paths rebuilt: {report.nodes_updated} path(s), "
                f"{report.flags_updated} has_children flag(s) corrected"
            )
        return report

    def _rebuild_subtree(self, root_id: int) -> Tuple[Set[int], int, int]:
        root = self.store.get(root_id)
        if root is None:
            # Deleted between listing the roots and reaching it
            return set(), 0, 0

        visited: Set[int] = set()
        updates: List[PathUpdate] = []
        flags_written = 0
        queue = deque([(root, [])])
        while queue:
            node, ancestor_ids = queue.popleft()
            if node.id in visited:
                continue
            visited.add(node.id)

            ids = ancestor_ids + [node.id]
            updates.append(PathUpdate(id=node.id, path=path_codec.encode(ids), level=len(ids) - 1))

            children = self.store.get_by_parent(node.id)
            if bool(node.has_children) != bool(children):
                node.has_children = bool(children)
                node.updated_by = self.actor_id
                flags_written += 1
            queue.extend((child, ids) for child in children)

        paths_written = self.store.batch_update_path_level(updates, actor_id=self.actor_id)
        return visited, paths_written, flags_written

    def _retrying(self) -> Retrying:
        # A stale snapshot can only be retried from a fresh transaction;
        # inside a caller's transaction the error goes straight up.
        attempts = 1 if self.store.in_transaction else self.max_attempts
        return Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=max(self.retry_wait * 8, 0)),
            retry=retry_if_exception_type(ConcurrentModificationError),
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _log_retry(self, retry_state) -> None:
        self.log_warning(
            f"Stale department snapshot, retrying "
            f"(attempt {retry_state.attempt_number + 1}/{self.max_attempts})"
        )

    def _invalidate(self, department_id: Optional[int]) -> None:
        try:
            self.invalidator.invalidate_subtree(department_id)
        except Exception as e:
            self.log_warning(f"Cache invalidation failed for department {department_id}: {e}")
