import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bizcards.database import Database, resolve_database_path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Add an employee business card record")
    parser.add_argument("employee_id", help="Unique employee identifier, used as the card URL")
    parser.add_argument("full_name", help="Name shown on the card")
    parser.add_argument("email", help="Work email address")
    parser.add_argument("--title", required=True, help="Job title")
    parser.add_argument("--department", required=True, help="Department or organisation")
    parser.add_argument("--unit", required=True, help="Unit within the department")
    parser.add_argument("--phone", default=None)
    parser.add_argument("--address", default=None)
    parser.add_argument("--linkedin-url", dest="linkedin_url", default=None)
    parser.add_argument("--github-url", dest="github_url", default=None)
    parser.add_argument("--photo-url", dest="photo_url", default=None)
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to BIZCARDS_DB_PATH or data/bizcards.sqlite3)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    db_env = args.db_path or os.getenv("BIZCARDS_DB_PATH")
    db_path = resolve_database_path(db_env)

    database = Database(db_path)
    database.initialize()

    try:
        record = database.create_user(
            employee_id=args.employee_id,
            full_name=args.full_name,
            email=args.email,
            title=args.title,
            department=args.department,
            unit=args.unit,
            phone=args.phone,
            address=args.address,
            linkedin_url=args.linkedin_url,
            github_url=args.github_url,
            photo_url=args.photo_url,
        )
    except ValueError as exc:  # duplicates, invalid fields
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created card #{record.id}: {record.full_name} <{record.email}> at /{record.employee_id}/")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
