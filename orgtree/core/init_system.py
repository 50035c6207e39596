import logging
from typing import Optional

from sqlalchemy.orm import Session

from orgtree.core.config import settings
from orgtree.core.logging import request_context
from orgtree.database import SessionLocal
from orgtree.models.department import Department
from orgtree.schemas.department import DepartmentCreate

logger = logging.getLogger(__name__)

DEFAULT_ROOT = DepartmentCreate(
    name="Company", code="COMP", description="Company headquarters", sort_order=0
)
DEFAULT_DEPARTMENTS = [
    DepartmentCreate(name="Human Resources", code="HR", description="Human resources department", sort_order=1),
    DepartmentCreate(name="Information Technology", code="IT", description="Information technology department", sort_order=2),
    DepartmentCreate(name="Finance", code="FIN", description="Finance department", sort_order=3),
    DepartmentCreate(name="Operations", code="OPS", description="Operations department", sort_order=4),
]


def init_system_data(db: Optional[Session] = None, force: bool = False) -> int:
    """
    Checks if the department tree needs initialization.
    If no department exists and seeding is enabled, creates the default
    company root and its first-level departments.

    Returns the number of departments created.
    """
    if not (force or settings.seed_default_departments):
        return 0

    from orgtree.services.hierarchy_service import HierarchyService

    owns_session = db is None
    db = db or SessionLocal()
    created = 0
    try:
        department_count = db.query(Department).count()
        if department_count:
            logger.info(f"System initialization check: {department_count} department(s) found.")
            return 0

        logger.info("Seeding default departments...")
        service = HierarchyService(db)
        # One transaction: a failure leaves the table empty so the next start retries
        with request_context(), service.store.transaction():
            root = service.create(None, DEFAULT_ROOT)
            created += 1
            for fields in DEFAULT_DEPARTMENTS:
                service.create(root.id, fields)
                created += 1
        logger.info(f"✓ Seeded {created} default departments under {root.code}.")

    except Exception as e:
        db.rollback()
        created = 0
        logger.error(f"Error during system initialization check: {str(e)}", exc_info=True)
    finally:
        if owns_session:
            db.close()
    return created
