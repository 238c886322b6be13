"""
Register a repository for scanning (normally done by the integrations service). Run from project root:
  python -m app.scripts.add_repository WORKSPACE_ID FULL_NAME [--branch BRANCH] [--clone-url URL]
Example:
  python -m app.scripts.add_repository 1 octo-org/payments-api --branch main
"""
import argparse
import sys

from app.core.database import SessionLocal
from app.models.repository import Repository


def main() -> int:
    parser = argparse.ArgumentParser(description="Register a repository for Vantage scans.")
    parser.add_argument("workspace_id", type=int, help="Owning workspace id")
    parser.add_argument("full_name", help="owner/name on the Git host")
    parser.add_argument("--branch", default="main", help="Default branch (default: main)")
    parser.add_argument("--clone-url", default=None, help="Clone URL (default: GitHub HTTPS URL)")
    args = parser.parse_args()

    full_name = args.full_name.strip().strip("/")
    if full_name.count("/") != 1 or len(full_name) > 512:
        print("FULL_NAME must look like owner/name.", file=sys.stderr)
        return 1
    clone_url = args.clone_url or f"https://github.com/{full_name}.git"

    db = SessionLocal()
    try:
        existing = (
            db.query(Repository)
            .filter(Repository.workspace_id == args.workspace_id, Repository.full_name == full_name)
            .first()
        )
        if existing:
            print(f"Repository '{full_name}' already registered with id {existing.id}.", file=sys.stderr)
            return 1
        repo = Repository(
            workspace_id=args.workspace_id,
            full_name=full_name,
            default_branch=args.branch.strip(),
            clone_url=clone_url,
        )
        db.add(repo)
        db.commit()
        db.refresh(repo)
        print(f"Registered repository '{full_name}' with id {repo.id}.")
        return 0
    except Exception as e:
        db.rollback()
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
