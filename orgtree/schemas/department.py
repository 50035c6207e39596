import enum
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime


class DepartmentFields(BaseModel):
    """Caller-settable department fields. Structural fields are never accepted here."""
    name: str = Field(..., min_length=1, max_length=100)
    code: str = Field(..., min_length=1, max_length=20, pattern="^[A-Z0-9_]+$")
    description: Optional[str] = Field(None, max_length=500)
    location: Optional[str] = Field(None, max_length=255)
    sort_order: int = Field(0, ge=0)
    manager_id: Optional[int] = None
    enabled: bool = True


class DepartmentCreate(DepartmentFields):
    """Schema for creating a new department. The parent is passed separately."""
    pass


class DepartmentUpdate(BaseModel):
    """Schema for updating a department's non-structural fields."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    code: Optional[str] = Field(None, min_length=1, max_length=20, pattern="^[A-Z0-9_]+$")
    description: Optional[str] = Field(None, max_length=500)
    location: Optional[str] = Field(None, max_length=255)
    sort_order: Optional[int] = Field(None, ge=0)
    manager_id: Optional[int] = None
    enabled: Optional[bool] = None


class DepartmentResponse(BaseModel):
    """Schema for department response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    code: str
    description: Optional[str] = None
    location: Optional[str] = None
    parent_id: Optional[int] = None
    path: str
    level: int
    has_children: bool
    sort_order: int
    manager_id: Optional[int] = None
    enabled: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[int] = None
    updated_by: Optional[int] = None


class DepartmentTreeNode(BaseModel):
    """Schema for department with nested children."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    code: str
    parent_id: Optional[int] = None
    path: str
    level: int
    sort_order: int
    enabled: bool
    has_children: bool
    manager_id: Optional[int] = None
    children: List["DepartmentTreeNode"] = []

    def iter_ids(self):
        """Yield the ids of this node and every node below it."""
        yield self.id
        for child in self.children:
            yield from child.iter_ids()


class DepartmentStatistics(BaseModel):
    department_id: int
    department_name: str
    direct_child_count: int
    total_descendant_count: int
    max_depth: int
    has_manager: bool
    manager_id: Optional[int] = None
    # Populated only when an employee directory is available
    direct_employee_count: Optional[int] = None
    total_employee_count: Optional[int] = None


class DeletionCheck(BaseModel):
    department_id: int
    can_delete: bool
    child_count: int = 0
    employee_count: int = 0
    reason: Optional[str] = None


class PathUpdate(BaseModel):
    """One row of an atomic path/level rewrite."""
    id: int
    path: str
    level: int = Field(..., ge=0)


class RebuildReport(BaseModel):
    total_roots: int = 0
    roots_processed: int = 0
    nodes_visited: int = 0
    nodes_updated: int = 0
    flags_updated: int = 0
    unreachable_ids: List[int] = []
    interrupted: bool = False


class IntegrityIssueType(str, enum.Enum):
    MALFORMED_PATH = "malformed_path"
    PATH_MISMATCH = "path_mismatch"
    LEVEL_MISMATCH = "level_mismatch"
    CYCLE = "cycle"
    HAS_CHILDREN_MISMATCH = "has_children_mismatch"
    DANGLING_PARENT = "dangling_parent"


class IntegrityIssue(BaseModel):
    department_id: int
    issue: IntegrityIssueType
    detail: str


# Update forward references
DepartmentTreeNode.model_rebuild()
