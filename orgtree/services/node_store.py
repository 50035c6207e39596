"""
Node Store

Persistence boundary of the hierarchy engine. The engine only talks to the
`NodeStore` protocol; `SqlAlchemyNodeStore` implements it over a session.

Write methods flush but never commit: the caller groups them inside
`transaction()`, which commits once or rolls everything back. Rows carry a
version counter, so a flush against a row changed since it was read fails
and surfaces as ConcurrentModificationError.
"""
import logging
from contextlib import contextmanager
from typing import ContextManager, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from orgtree.core.exceptions import ConcurrentModificationError, DataIntegrityError, DuplicateCode
from orgtree.models.department import Department
from orgtree.schemas.department import PathUpdate
from orgtree.services.path_codec import DELIMITER

logger = logging.getLogger(__name__)


class NodeStore(Protocol):
    in_transaction: bool
    def transaction(self) -> ContextManager["NodeStore"]: ...
    def get(self, department_id: int) -> Optional[Department]: ...
    def get_for_update(self, department_id: int) -> Optional[Department]: ...
    def get_many(self, ids: Iterable[int]) -> Dict[int, Department]: ...
    def get_by_parent(self, parent_id: Optional[int]) -> List[Department]: ...
    def get_by_code(self, code: str) -> Optional[Department]: ...
    def get_by_level(self, level: int) -> List[Department]: ...
    def scan_by_path_prefix(self, prefix: str, lock: bool = False) -> List[Department]: ...
    def search_by_name(self, term: str) -> List[Department]: ...
    def list_all(self) -> List[Department]: ...
    def exists_by_parent(self, parent_id: int) -> bool: ...
    def count_by_parent(self, parent_id: int) -> int: ...
    def create(self, node: Department) -> Department: ...
    def save(self, node: Department) -> Department: ...
    def touch(self, node: Department) -> None: ...
    def batch_update_path_level(self, updates: Sequence[PathUpdate], actor_id: Optional[int] = None) -> int: ...
    def delete(self, department_id: int) -> None: ...


def _sibling_order():
    return (Department.sort_order, Department.id)


class SqlAlchemyNodeStore:
    """NodeStore over a SQLAlchemy session (PostgreSQL in production, SQLite in tests)."""

    def __init__(self, session: Session):
        self.session = session
        self._depth = 0
        self._written_codes: List[str] = []

    @contextmanager
    def transaction(self) -> Iterator["SqlAlchemyNodeStore"]:
        """
        Run the enclosed writes as one atomic unit. Nested calls join the
        outermost transaction.
        """
        if self._depth:
            yield self
            return

        self._depth += 1
        self._written_codes = []
        try:
            yield self
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            logger.warning(f"Stale snapshot detected, transaction rolled back: {exc}")
            raise ConcurrentModificationError() from exc
        except IntegrityError as exc:
            self.session.rollback()
            message = str(exc.orig).lower()
            if "code" in message and ("unique" in message or "duplicate" in message):
                code = self._written_codes[-1] if self._written_codes else "?"
                raise DuplicateCode(code) from exc
            raise DataIntegrityError(f"Department store rejected the write: {exc.orig}") from exc
        except Exception:
            self.session.rollback()
            raise
        finally:
            self._depth -= 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def get(self, department_id: int) -> Optional[Department]:
        if department_id is None:
            return None
        return self.session.get(Department, department_id)

    def get_for_update(self, department_id: int) -> Optional[Department]:
        """
        Re-read a row from the database and lock it until the transaction
        ends (SELECT ... FOR UPDATE; SQLite serializes writers instead).
        Any copy already held by the session is overwritten.
        """
        if department_id is None:
            return None
        return self.session.get(Department, department_id, with_for_update=True, populate_existing=True)

    def get_many(self, ids: Iterable[int]) -> Dict[int, Department]:
        ids = list(set(ids))
        if not ids:
            return {}
        rows = self.session.query(Department).filter(Department.id.in_(ids)).all()
        return {row.id: row for row in rows}

    def get_by_parent(self, parent_id: Optional[int]) -> List[Department]:
        query = self.session.query(Department)
        if parent_id is None:
            query = query.filter(Department.parent_id.is_(None))
        else:
            query = query.filter(Department.parent_id == parent_id)
        return query.order_by(*_sibling_order()).all()

    def get_by_code(self, code: str) -> Optional[Department]:
        return self.session.query(Department).filter(Department.code == code).first()

    def get_by_level(self, level: int) -> List[Department]:
        return (
            self.session.query(Department)
            .filter(Department.level == level)
            .order_by(Department.path)
            .all()
        )

    def scan_by_path_prefix(self, prefix: str, lock: bool = False) -> List[Department]:
        """
        Strict descendants of the node whose path is `prefix`, ordered by path.
        With `lock`, rows are re-read and locked as in get_for_update().
        """
        query = (
            self.session.query(Department)
            .filter(Department.path.startswith(prefix + DELIMITER, autoescape=True))
            .order_by(Department.path)
        )
        if lock:
            query = query.with_for_update().populate_existing()
        return query.all()

    def search_by_name(self, term: str) -> List[Department]:
        return (
            self.session.query(Department)
            .filter(func.lower(Department.name).contains(term.lower(), autoescape=True))
            .order_by(Department.name, Department.id)
            .all()
        )

    def list_all(self) -> List[Department]:
        return self.session.query(Department).order_by(Department.path, Department.id).all()

    def exists_by_parent(self, parent_id: int) -> bool:
        return self.count_by_parent(parent_id) > 0

    def count_by_parent(self, parent_id: int) -> int:
        return self.session.query(Department).filter(Department.parent_id == parent_id).count()

    # ------------------------------------------------------------------
    # Writes (flush only; commit happens in transaction())
    # ------------------------------------------------------------------
    def create(self, node: Department) -> Department:
        self._written_codes.append(node.code)
        self.session.add(node)
        self.session.flush()
        return node

    def save(self, node: Department) -> Department:
        if node.code:
            self._written_codes.append(node.code)
        self.session.flush()
        return node

    def touch(self, node: Department) -> None:
        """
        Force an UPDATE of `node` at the next flush even when nothing changed,
        so its version is checked and bumped. Writers that derive data from
        a row they do not otherwise modify (a parent's path) touch it.
        """
        flag_modified(node, "has_children")
        self.session.flush()

    def batch_update_path_level(self, updates: Sequence[PathUpdate], actor_id: Optional[int] = None) -> int:
        """
        Apply (id, path, level) rewrites in one flush. Rows whose values are
        already correct are left untouched. Returns the number of rows written.
        """
        nodes = self.get_many(u.id for u in updates)
        changed = 0
        for update in updates:
            node = nodes.get(update.id)
            if node is None:
                raise ConcurrentModificationError(f"Department {update.id} disappeared during the update")
            if node.path == update.path and node.level == update.level:
                continue
            node.path = update.path
            node.level = update.level
            if actor_id is not None:
                node.updated_by = actor_id
            changed += 1
        self.session.flush()
        return changed

    def delete(self, department_id: int) -> None:
        node = self.get(department_id)
        if node is None:
            return
        self.session.delete(node)
        self.session.flush()
