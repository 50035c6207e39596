from typing import Any, Dict, Optional

class AppException(Exception):
    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_code: str = "BUSINESS_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)

    # Transient errors: the caller may retry with a fresh read
    retryable = False

class NodeNotFound(AppException):
    def __init__(self, department_id: Any):
        super().__init__(
            message=f"Department {department_id} not found",
            status_code=404,
            error_code="DEPARTMENT_NOT_FOUND",
            details={"department_id": department_id}
        )

class ParentNotFound(AppException):
    def __init__(self, parent_id: Any, message: Optional[str] = None, status_code: int = 404, error_code: str = "PARENT_NOT_FOUND"):
        super().__init__(
            message=message or f"Parent department {parent_id} not found",
            status_code=status_code,
            error_code=error_code,
            details={"parent_id": parent_id}
        )

class ParentDisabledError(ParentNotFound):
    """Creating under a soft-disabled parent is refused. Subclasses ParentNotFound so either can be caught."""
    def __init__(self, parent_id: Any):
        super().__init__(
            parent_id,
            message=f"Parent department {parent_id} is disabled",
            status_code=409,
            error_code="PARENT_DISABLED"
        )

class DuplicateCode(AppException):
    def __init__(self, code: str):
        super().__init__(
            message=f"Department code '{code}' is already in use",
            status_code=409,
            error_code="DUPLICATE_CODE",
            details={"code": code}
        )

class CircularReferenceError(AppException):
    def __init__(self, department_id: Any, parent_id: Any):
        super().__init__(
            message=f"Moving department {department_id} under {parent_id} would create a circular reference",
            status_code=409,
            error_code="CIRCULAR_REFERENCE",
            details={"department_id": department_id, "parent_id": parent_id}
        )

class DepartmentHasChildrenError(AppException):
    def __init__(self, department_id: Any, child_count: int):
        super().__init__(
            message=f"Cannot delete department {department_id} because it has {child_count} child department(s)",
            status_code=409,
            error_code="DEPARTMENT_HAS_CHILDREN",
            details={"department_id": department_id, "child_count": child_count}
        )

class DepartmentInUseError(AppException):
    def __init__(self, department_id: Any, employee_count: int):
        super().__init__(
            message=f"Cannot delete department {department_id} because it has {employee_count} employee(s)",
            status_code=409,
            error_code="DEPARTMENT_IN_USE",
            details={"department_id": department_id, "employee_count": employee_count}
        )

class InvalidManagerError(AppException):
    def __init__(self, manager_id: Any):
        super().__init__(
            message=f"Manager {manager_id} is not a valid person",
            status_code=422,
            error_code="INVALID_MANAGER",
            details={"manager_id": manager_id}
        )

class InvalidPathError(AppException):
    def __init__(self, path: Any, reason: str):
        super().__init__(
            message=f"Malformed department path {path!r}: {reason}",
            status_code=422,
            error_code="INVALID_PATH",
            details={"path": path}
        )

class ConcurrentModificationError(AppException):
    retryable = True

    def __init__(self, message: str = "Department tree was modified concurrently; retry with a fresh read"):
        super().__init__(
            message=message,
            status_code=409,
            error_code="CONCURRENT_MODIFICATION"
        )

class RebuildInProgressError(AppException):
    retryable = True

    def __init__(self, message: str = "A path rebuild is in progress"):
        super().__init__(
            message=message,
            status_code=423,
            error_code="REBUILD_IN_PROGRESS"
        )

class DataIntegrityError(AppException):
    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=409,
            error_code="DATA_INTEGRITY_ERROR"
        )
