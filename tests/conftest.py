import pytest
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set env before importing orgtree components
os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SEED_DEFAULT_DEPARTMENTS"] = "false"
# Tests hand caches to the services explicitly
os.environ["ENABLE_CACHING"] = "false"

from orgtree.database import enable_sqlite_foreign_keys, init_db
from orgtree.schemas.department import DepartmentCreate
from orgtree.services.cache import SubtreeCache
from orgtree.services.guard import StructureGuard
from orgtree.services.hierarchy_service import HierarchyService
from orgtree.services.query_engine import QueryEngine

# SQLite in-memory database configuration
SQLALCHEMY_DATABASE_URL = "sqlite://"


class FakeEmployeeDirectory:
    """In-memory stand-in for the HR employee directory."""

    def __init__(self):
        self.assigned = {}
        self.people = {100, 101, 102}

    def count_assigned(self, department_id):
        return self.assigned.get(department_id, 0)

    def is_valid_person(self, manager_id):
        return manager_id in self.people


@pytest.fixture(scope="function")
def engine():
    """A fresh in-memory database per test; services commit for real."""
    engine = enable_sqlite_foreign_keys(create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    ))
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture(scope="function")
def directory():
    return FakeEmployeeDirectory()


@pytest.fixture(scope="function")
def cache():
    return SubtreeCache(max_size=50, default_ttl=300)


@pytest.fixture(scope="function")
def guard():
    return StructureGuard()


@pytest.fixture(scope="function")
def service(db_session, directory, cache, guard):
    return HierarchyService(
        db_session,
        actor_id=7,
        directory=directory,
        invalidator=cache,
        guard=guard,
        max_attempts=3,
        retry_wait=0,
    )


@pytest.fixture(scope="function")
def query(db_session, directory, cache):
    return QueryEngine(db_session, cache=cache, directory=directory)


@pytest.fixture(scope="function")
def make_department(service):
    """Helper fixture to create a department with a generated name."""
    def _make(code, parent_id=None, **fields):
        fields.setdefault("name", f"{code.title()} Department")
        return service.create(parent_id, DepartmentCreate(code=code, **fields))
    return _make


@pytest.fixture(scope="function")
def sample_tree(make_department):
    """
    R1 (1)
      C1 (2)
        G1 (3)
    R2 (4)
    """
    r1 = make_department("R1")
    c1 = make_department("C1", r1.id)
    g1 = make_department("G1", c1.id)
    r2 = make_department("R2")
    return {"R1": r1, "C1": c1, "G1": g1, "R2": r2}


@pytest.fixture(scope="function")
def file_engine(tmp_path):
    """File-backed database so that independent sessions see each other's commits."""
    engine = enable_sqlite_foreign_keys(create_engine(
        f"sqlite:///{tmp_path / 'orgtree.db'}",
        connect_args={"check_same_thread": False},
    ))
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def two_sessions(file_engine):
    """Two sessions standing in for two workers sharing one database."""
    SessionFactory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    first, second = SessionFactory(), SessionFactory()
    yield first, second
    first.close()
    second.close()
