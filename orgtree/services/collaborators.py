"""
Contracts of the collaborators the hierarchy engine consumes but does not own.

The employee directory lives in the HR layer; the cache belongs to whoever
serves reads. Both are injected into the services.
"""
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class EmployeeDirectory(Protocol):
    def count_assigned(self, department_id: int) -> int:
        """Number of active employees assigned to the department."""
        ...

    def is_valid_person(self, manager_id: int) -> bool:
        """Whether the id resolves to a person who may manage a department."""
        ...


@runtime_checkable
class CacheInvalidator(Protocol):
    def invalidate_subtree(self, root_id: Optional[int]) -> None:
        """Drop cached data covering `root_id`; None means the root level."""
        ...


class NullEmployeeDirectory:
    """Directory for standalone use: nobody is assigned, every id is a person."""

    def count_assigned(self, department_id: int) -> int:
        return 0

    def is_valid_person(self, manager_id: int) -> bool:
        return True


class NullCacheInvalidator:
    def invalidate_subtree(self, root_id: Optional[int]) -> None:
        return None
