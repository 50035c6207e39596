"""
Consistency checks run before any structural mutation.

Each check reads through the node store and raises a typed error; nothing
here writes.
"""
from collections import Counter
from typing import List, Optional, Tuple

from orgtree.core.exceptions import (
    CircularReferenceError,
    DepartmentHasChildrenError,
    DepartmentInUseError,
    DuplicateCode,
    InvalidManagerError,
    InvalidPathError,
    NodeNotFound,
    ParentDisabledError,
    ParentNotFound,
)
from orgtree.models.department import Department
from orgtree.schemas.department import DeletionCheck, IntegrityIssue, IntegrityIssueType
from orgtree.services import path_codec
from orgtree.services.collaborators import EmployeeDirectory, NullEmployeeDirectory
from orgtree.services.node_store import NodeStore


class ConsistencyValidator:
    def __init__(self, store: NodeStore, directory: Optional[EmployeeDirectory] = None):
        self.store = store
        self.directory = directory or NullEmployeeDirectory()

    def require(self, department_id: int) -> Department:
        node = self.store.get(department_id)
        if node is None:
            raise NodeNotFound(department_id)
        return node

    def validate_create(self, parent_id: Optional[int], code: str) -> Optional[Department]:
        """Returns the resolved parent (None for a root), freshly read and locked."""
        parent = None
        if parent_id is not None:
            parent = self.store.get_for_update(parent_id)
            if parent is None:
                raise ParentNotFound(parent_id)
            if not parent.enabled:
                raise ParentDisabledError(parent_id)
        if self.store.get_by_code(code) is not None:
            raise DuplicateCode(code)
        return parent

    def validate_move(self, node_id: int, new_parent_id: Optional[int]) -> Tuple[Department, Optional[Department]]:
        """
        A node may not be moved under itself or any of its descendants.
        Returns the node and its resolved new parent (None when moving to root),
        both freshly read and locked.
        """
        node = self.store.get_for_update(node_id)
        if node is None:
            raise NodeNotFound(node_id)
        if new_parent_id is None:
            return node, None
        if new_parent_id == node_id:
            raise CircularReferenceError(node_id, new_parent_id)

        new_parent = self.store.get_for_update(new_parent_id)
        if new_parent is None:
            raise ParentNotFound(new_parent_id)
        if path_codec.is_prefix_of(node.path, new_parent.path) or node.id in path_codec.decode(new_parent.path):
            raise CircularReferenceError(node_id, new_parent_id)
        return node, new_parent

    def deletion_check(self, node_id: int) -> DeletionCheck:
        self.require(node_id)
        child_count = self.store.count_by_parent(node_id)
        employee_count = self.directory.count_assigned(node_id)

        reason = None
        if child_count and employee_count:
            reason = "Cannot delete department with child departments and assigned employees"
        elif child_count:
            reason = "Cannot delete department with child departments"
        elif employee_count:
            reason = "Cannot delete department with assigned employees"

        return DeletionCheck(
            department_id=node_id,
            can_delete=reason is None,
            child_count=child_count,
            employee_count=employee_count,
            reason=reason,
        )

    def validate_delete(self, node_id: int) -> Department:
        check = self.deletion_check(node_id)
        if check.child_count:
            raise DepartmentHasChildrenError(node_id, check.child_count)
        if check.employee_count:
            raise DepartmentInUseError(node_id, check.employee_count)
        return self.require(node_id)

    def validate_code_change(self, node_id: int, code: str) -> None:
        existing = self.store.get_by_code(code)
        if existing is not None and existing.id != node_id:
            raise DuplicateCode(code)

    def validate_manager(self, manager_id: Optional[int]) -> None:
        if manager_id is not None and not self.directory.is_valid_person(manager_id):
            raise InvalidManagerError(manager_id)

    def find_violations(self) -> List[IntegrityIssue]:
        """Scan every department for broken tree invariants."""
        nodes = self.store.list_all()
        by_id = {node.id: node for node in nodes}
        child_counts = Counter(node.parent_id for node in nodes if node.parent_id is not None)
        issues: List[IntegrityIssue] = []

        def report(node, issue, detail):
            issues.append(IntegrityIssue(department_id=node.id, issue=issue, detail=detail))

        for node in nodes:
            if bool(node.has_children) != (child_counts[node.id] > 0):
                report(node, IntegrityIssueType.HAS_CHILDREN_MISMATCH,
                       f"has_children={node.has_children} but {child_counts[node.id]} child(ren)")

            parent = None
            if node.parent_id is not None:
                parent = by_id.get(node.parent_id)
                if parent is None:
                    report(node, IntegrityIssueType.DANGLING_PARENT, f"parent {node.parent_id} does not exist")

            try:
                ids = path_codec.decode(node.path)
            except InvalidPathError as exc:
                report(node, IntegrityIssueType.MALFORMED_PATH, exc.message)
                continue

            if path_codec.has_cycle(node.path):
                report(node, IntegrityIssueType.CYCLE, f"id repeats in {node.path}")
            if node.level != len(ids) - 1:
                report(node, IntegrityIssueType.LEVEL_MISMATCH, f"level {node.level} for path {node.path}")

            if node.parent_id is None:
                expected = [node.id]
            elif parent is None:
                continue
            else:
                try:
                    expected = path_codec.decode(parent.path) + [node.id]
                except InvalidPathError:
                    continue
            if ids != expected:
                report(node, IntegrityIssueType.PATH_MISMATCH,
                       f"path {node.path} expected {path_codec.encode(expected)}")

        return issues
