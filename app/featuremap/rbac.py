from flask import abort, g
from sqlalchemy.orm import Session

from app.featuremap.models import PROJECT_ROLES, Project, ProjectMember, User

READ = "READ"
WRITE = "WRITE"

READ_ROLES = frozenset(PROJECT_ROLES)
WRITE_ROLES = frozenset({"OWNER", "MAINTAINER"})


def project_role(s: Session, user: User | None, project: Project) -> str | None:
    if not user or not user.is_active:
        return None
    if project.owner_user_id == user.id:
        return "OWNER"
    member = s.get(ProjectMember, (project.id, user.id))
    return member.role if member else None


def user_has_project_access(s: Session, user: User | None, project: Project, level: str) -> bool:
    role = project_role(s, user, project)
    if role is None:
        return False
    allowed = WRITE_ROLES if level == WRITE else READ_ROLES
    return role in allowed


def require_project_access(s: Session, project_id: str, level: str) -> Project:
    """
    Pass/fail gate evaluated before any engine call.
    401 without a user, 404 for an unknown project, 403 for missing role.
    """
    user: User | None = getattr(g, "current_user", None)
    if not user or not user.is_active:
        abort(401)
    project = s.get(Project, project_id)
    if project is None:
        abort(404, description="Project not found")
    if not user_has_project_access(s, user, project, level):
        g.missing_permission = f"project.{level.lower()}"
        abort(403)
    return project

