# Models package
# Importing modules here ensures they are registered with SQLAlchemy Base
from . import department

# Explicit class exports for cleaner imports
from .department import Department

__all__ = [
    "Department",
]
