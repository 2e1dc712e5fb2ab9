"""
Create tables (when missing) and seed an owner user plus a demo project.

Idempotent: existing rows are left untouched.

Usage:
  python scripts/init_db.py
"""
import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.featuremap.models import Base, Project, ProjectMember, User
from scripts._db_utils import create_script_engine, script_session


def create_tables(database_url: str) -> None:
    engine = create_script_engine(database_url)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the owner user and a demo project in an idempotent way.
    """
    owner_email = (os.environ.get("OWNER_EMAIL") or "owner@featuremap.local").strip().lower()
    project_name = (os.environ.get("DEMO_PROJECT_NAME") or "Demo project").strip()
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///featuremap.db").strip()

    with script_session(db_url) as s:
        user = s.query(User).filter(User.email == owner_email).one_or_none()
        if not user:
            user = User(email=owner_email, name="Owner", is_active=True)
            s.add(user)
            s.flush()

        project = (
            s.query(Project)
            .filter(Project.owner_user_id == user.id, Project.name == project_name)
            .one_or_none()
        )
        if not project:
            project = Project(name=project_name, owner_user_id=user.id)
            s.add(project)
            s.flush()
        if s.get(ProjectMember, (project.id, user.id)) is None:
            s.add(ProjectMember(project_id=project.id, user_id=user.id, role="OWNER"))

        print("Initialized database (seed_only).")
        print(f"Owner email: {owner_email} (id={user.id})")
        print(f"Project: {project.name} (id={project.id})")


def main() -> None:
    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///featuremap.db").strip()
    create_tables(db_url)
    seed_only(database_url=db_url)


if __name__ == "__main__":
    main()
