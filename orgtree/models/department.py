"""
Department Model with Materialized-Path Hierarchy.

Departments reference their parent by id only; the tree is navigated through
the node store, never through ORM relationships. `path`, `level` and
`has_children` are projections maintained by the hierarchy service.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Text, CheckConstraint, Index
from sqlalchemy.sql import func
from orgtree.database import Base


class Department(Base):
    __tablename__ = "departments"
    __table_args__ = (
        CheckConstraint("level >= 0", name="chk_department_level"),
        CheckConstraint("sort_order >= 0", name="chk_department_sort_order"),
        Index("idx_department_parent_sort", "parent_id", "sort_order"),
    )

    id = Column(Integer, primary_key=True, index=True)

    name = Column(String(100), nullable=False, index=True)
    code = Column(String(20), nullable=False, unique=True, index=True)  # Short code like "ENG", "HR", "FIN"
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)

    parent_id = Column(Integer, ForeignKey("departments.id", ondelete="RESTRICT"), nullable=True, index=True)

    # Derived: "/1/4/9" for a node whose ancestors are 1 and 4
    path = Column(String(500), nullable=True, index=True)
    level = Column(Integer, nullable=False, default=0, index=True)
    has_children = Column(Boolean, nullable=False, default=False)

    sort_order = Column(Integer, nullable=False, default=0)

    # Person in the external employee directory
    manager_id = Column(Integer, nullable=True, index=True)

    enabled = Column(Boolean, default=True, nullable=False, index=True)

    # Bumped on every UPDATE; a stale snapshot fails the flush
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Department {self.code}: {self.name} ({self.path})>"
