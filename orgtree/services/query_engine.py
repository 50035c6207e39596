"""
Read paths over the department tree.

Every query is answered from the materialized paths: subtrees and descendants
with one prefix scan, ancestors by decoding the node's own path. Assembled
trees are served from the subtree cache when one is configured.
"""
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from orgtree.core.exceptions import NodeNotFound
from orgtree.models.department import Department
from orgtree.schemas.department import (
    DeletionCheck,
    DepartmentResponse,
    DepartmentStatistics,
    DepartmentTreeNode,
)
from orgtree.services import path_codec
from orgtree.services.base import BaseService
from orgtree.services.cache import FOREST_KEY, SubtreeCache, get_default_cache, subtree_key
from orgtree.services.collaborators import EmployeeDirectory
from orgtree.services.node_store import NodeStore, SqlAlchemyNodeStore
from orgtree.services.validator import ConsistencyValidator


def _to_response(nodes: List[Department]) -> List[DepartmentResponse]:
    return [DepartmentResponse.model_validate(node) for node in nodes]


class QueryEngine(BaseService):
    def __init__(
        self,
        db: Session,
        store: Optional[NodeStore] = None,
        cache: Optional[SubtreeCache] = None,
        directory: Optional[EmployeeDirectory] = None,
    ):
        super().__init__(db)
        self.store = store or SqlAlchemyNodeStore(db)
        self.cache = cache if cache is not None else get_default_cache()
        self.directory = directory
        self.validator = ConsistencyValidator(self.store, directory)

    def get(self, department_id: int) -> DepartmentResponse:
        return DepartmentResponse.model_validate(self.validator.require(department_id))

    def get_by_code(self, code: str) -> DepartmentResponse:
        node = self.store.get_by_code(code)
        if node is None:
            raise NodeNotFound(code)
        return DepartmentResponse.model_validate(node)

    def get_children(self, parent_id: Optional[int]) -> List[DepartmentResponse]:
        """Direct children ordered by sort order; None lists the roots."""
        if parent_id is not None:
            self.validator.require(parent_id)
        return _to_response(self.store.get_by_parent(parent_id))

    def get_subtree(self, root_id: int) -> DepartmentTreeNode:
        """The department and everything below it, as a nested tree."""
        key = subtree_key(root_id)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        root = self.validator.require(root_id)
        descendants = self.store.scan_by_path_prefix(root.path)
        tree = next(t for t in self._assemble([root] + descendants) if t.id == root.id)

        if self.cache is not None:
            self.cache.set(key, tree, tree.iter_ids())
        return tree

    def get_tree(self) -> List[DepartmentTreeNode]:
        """The whole forest, roots first, siblings by sort order."""
        if self.cache is not None:
            cached = self.cache.get(FOREST_KEY)
            if cached is not None:
                return cached

        forest = self._assemble(self.store.list_all())

        if self.cache is not None:
            self.cache.set(FOREST_KEY, forest, (i for root in forest for i in root.iter_ids()))
        return forest

    def get_ancestors(self, department_id: int) -> List[DepartmentResponse]:
        """Ancestors from the root down to the direct parent."""
        node = self.validator.require(department_id)
        ancestor_ids = path_codec.decode(node.path)[:-1]
        rows = self.store.get_many(ancestor_ids)

        missing = [i for i in ancestor_ids if i not in rows]
        if missing:
            self.log_warning(f"Path {node.path} of department {department_id} names missing ancestors {missing}")
        return _to_response([rows[i] for i in ancestor_ids if i in rows])

    def get_path(self, department_id: int) -> List[DepartmentResponse]:
        """Breadcrumb: ancestors followed by the department itself."""
        return self.get_ancestors(department_id) + [self.get(department_id)]

    def get_descendants(self, department_id: int) -> List[DepartmentResponse]:
        node = self.validator.require(department_id)
        return _to_response(self.store.scan_by_path_prefix(node.path))

    def get_by_level(self, level: int) -> List[DepartmentResponse]:
        return _to_response(self.store.get_by_level(level))

    def search(self, term: str) -> List[DepartmentResponse]:
        """Case-insensitive name search."""
        term = (term or "").strip()
        if not term:
            return []
        return _to_response(self.store.search_by_name(term))

    def list_all(self) -> List[DepartmentResponse]:
        return _to_response(self.store.list_all())

    def can_delete(self, department_id: int) -> DeletionCheck:
        return self.validator.deletion_check(department_id)

    def get_statistics(self, department_id: int) -> DepartmentStatistics:
        node = self.validator.require(department_id)
        descendants = self.store.scan_by_path_prefix(node.path)
        max_depth = max((d.level for d in descendants), default=node.level) - node.level

        stats = DepartmentStatistics(
            department_id=node.id,
            department_name=node.name,
            direct_child_count=sum(1 for d in descendants if d.parent_id == node.id),
            total_descendant_count=len(descendants),
            max_depth=max_depth,
            has_manager=node.manager_id is not None,
            manager_id=node.manager_id,
        )
        if self.directory is not None:
            stats.direct_employee_count = self.directory.count_assigned(node.id)
            stats.total_employee_count = stats.direct_employee_count + sum(
                self.directory.count_assigned(d.id) for d in descendants
            )
        return stats

    @staticmethod
    def _assemble(nodes: List[Department]) -> List[DepartmentTreeNode]:
        """Nest flat rows by parent_id. Rows whose parent is absent become tops."""
        by_id: Dict[int, DepartmentTreeNode] = {
            node.id: DepartmentTreeNode.model_validate(node) for node in nodes
        }
        children = defaultdict(list)
        tops = []
        for item in by_id.values():
            if item.parent_id is not None and item.parent_id in by_id:
                children[item.parent_id].append(item)
            else:
                tops.append(item)

        def order(item):
            return (item.sort_order, item.id)

        for parent_id, items in children.items():
            by_id[parent_id].children = sorted(items, key=order)
        return sorted(tops, key=order)
