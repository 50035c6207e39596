import sys

from orgtree.database import SessionLocal
from orgtree.services.node_store import SqlAlchemyNodeStore
from orgtree.services.validator import ConsistencyValidator


def check_tree() -> int:
    db = SessionLocal()
    try:
        issues = ConsistencyValidator(SqlAlchemyNodeStore(db)).find_violations()
    finally:
        db.close()

    if not issues:
        print("Department tree is consistent.")
        return 0

    print(f"Found {len(issues)} issue(s):")
    for issue in issues:
        print(f" - department {issue.department_id}: {issue.issue.value} ({issue.detail})")
    print("Run scripts/rebuild_paths.py to repair path, level and has_children.")
    return 1


if __name__ == "__main__":
    sys.exit(check_tree())
