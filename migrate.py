"""
Apply pending schema migrations to the configured database.

    python migrate.py           # apply
    python migrate.py --status  # list applied versions
"""

import argparse
import os

from sqlalchemy import inspect

os.environ["AUTO_MIGRATE"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
from backoffice.extensions import db  # noqa: E402
from backoffice.migrations import MIGRATIONS, applied_versions, run_migrations  # noqa: E402
from main import create_app  # noqa: E402


def main():
    parser = argparse.ArgumentParser(description="Apply pending schema migrations")
    parser.add_argument("--status", action="store_true", help="show applied versions")
    args = parser.parse_args()

    app = create_app({"AUTO_MIGRATE": False, "SCHEDULER_ENABLED": False})
    with app.app_context():
        if args.status:
            done = set()
            if inspect(db.engine).has_table("schema_migrations"):
                with db.engine.connect() as conn:
                    done = applied_versions(conn)
            for version, name, _ in MIGRATIONS:
                mark = "x" if version in done else " "
                print(f"[{mark}] {version:03d} {name}")
            return

        applied = run_migrations(db.engine)
        print(f"Applied migrations: {applied}" if applied else "Database is up to date")


if __name__ == "__main__":
    main()
