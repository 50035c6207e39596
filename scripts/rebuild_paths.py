"""Recompute every department path, level and has_children flag from parent links."""
import signal
import threading

from orgtree.core.logging import request_context, setup_logging
from orgtree.database import SessionLocal
from orgtree.services.hierarchy_service import HierarchyService


def rebuild_paths():
    setup_logging()
    stop = threading.Event()
    # Ctrl+C finishes the current root and stops cleanly
    signal.signal(signal.SIGINT, lambda *_: stop.set())

    db = SessionLocal()
    try:
        with request_context() as run_id:
            print(f"Rebuild run {run_id}")
            report = HierarchyService(db).rebuild_paths(stop_event=stop)
        print(f"Roots processed: {report.roots_processed}/{report.total_roots}")
        print(f"Departments visited: {report.nodes_visited}")
        print(f"Paths rewritten: {report.nodes_updated}")
        print(f"has_children flags corrected: {report.flags_updated}")
        if report.unreachable_ids:
            print(f"Unreachable departments: {report.unreachable_ids}")
        if report.interrupted:
            print("Interrupted before every root was processed; run again to finish.")
    finally:
        db.close()


if __name__ == "__main__":
    rebuild_paths()
