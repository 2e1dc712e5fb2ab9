"""Create users/projects/audit and module/feature structure tables.

Revision ID: a3f1c9e2b7d4
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a3f1c9e2b7d4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("name", sa.String(255), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("email"),
        )

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("owner_user_id", sa.String(36), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["owner_user_id"], ["users.id"], ondelete="RESTRICT"),
        )

    if "project_members" not in existing_tables:
        op.create_table(
            "project_members",
            sa.Column("project_id", sa.String(36), primary_key=True),
            sa.Column("user_id", sa.String(36), primary_key=True),
            sa.Column("role", sa.String(16), nullable=False, server_default="VIEWER"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.String(36), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_audit_events_entity", "audit_events", ["entity_type", "entity_id"])

    if "modules" not in existing_tables:
        op.create_table(
            "modules",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("project_id", sa.String(36), nullable=False),
            sa.Column("parent_module_id", sa.String(36), nullable=True),
            sa.Column("name", sa.String(120), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_root", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            # FK to module_versions is added below, once that table exists.
            sa.Column("published_version_id", sa.String(36), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("last_modified_by_user_id", sa.String(36), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("deleted_by_user_id", sa.String(36), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["parent_module_id"], ["modules.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["last_modified_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["deleted_by_user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_modules_scope_order", "modules", ["project_id", "parent_module_id", "sort_order"])
        op.create_index("idx_modules_deleted_at", "modules", ["deleted_at"])

    if "module_versions" not in existing_tables:
        op.create_table(
            "module_versions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("module_id", sa.String(36), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(120), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("parent_module_id", sa.String(36), nullable=True),
            sa.Column("is_root", sa.Boolean(), nullable=True),
            sa.Column("children_pins", sa.JSON(), nullable=False),
            sa.Column("feature_pins", sa.JSON(), nullable=False),
            sa.Column("changelog", sa.Text(), nullable=True),
            sa.Column("is_rollback", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("content_hash", sa.String(64), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("created_by_user_id", sa.String(36), nullable=True),
            sa.ForeignKeyConstraint(["module_id"], ["modules.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("module_id", "version_number", name="uq_module_version_number"),
            sa.UniqueConstraint("module_id", "content_hash", name="uq_module_version_hash"),
        )

    if "features" not in existing_tables:
        op.create_table(
            "features",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("module_id", sa.String(36), nullable=False),
            sa.Column("name", sa.String(120), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("priority", sa.String(16), nullable=True, server_default="MEDIUM"),
            sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("published_version_id", sa.String(36), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("last_modified_by_user_id", sa.String(36), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("deleted_by_user_id", sa.String(36), nullable=True),
            sa.ForeignKeyConstraint(["module_id"], ["modules.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["last_modified_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["deleted_by_user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_features_module_order", "features", ["module_id", "sort_order"])
        op.create_index("idx_features_deleted_at", "features", ["deleted_at"])

    if "feature_versions" not in existing_tables:
        op.create_table(
            "feature_versions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("feature_id", sa.String(36), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(120), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("priority", sa.String(16), nullable=True),
            sa.Column("status", sa.String(16), nullable=True),
            sa.Column("changelog", sa.Text(), nullable=True),
            sa.Column("is_rollback", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("content_hash", sa.String(64), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("created_by_user_id", sa.String(36), nullable=True),
            sa.ForeignKeyConstraint(["feature_id"], ["features.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("feature_id", "version_number", name="uq_feature_version_number"),
            sa.UniqueConstraint("feature_id", "content_hash", name="uq_feature_version_hash"),
        )

    # SQLite cannot ALTER ADD CONSTRAINT; there the published pointers stay plain columns.
    if conn.dialect.name != "sqlite":
        op.create_foreign_key(
            "fk_modules_published_version", "modules", "module_versions",
            ["published_version_id"], ["id"], ondelete="SET NULL",
        )
        op.create_foreign_key(
            "fk_features_published_version", "features", "feature_versions",
            ["published_version_id"], ["id"], ondelete="SET NULL",
        )


def downgrade() -> None:
    conn = op.get_bind()
    if conn.dialect.name != "sqlite":
        op.drop_constraint("fk_features_published_version", "features", type_="foreignkey")
        op.drop_constraint("fk_modules_published_version", "modules", type_="foreignkey")
    op.drop_table("feature_versions")
    op.drop_index("idx_features_deleted_at", table_name="features")
    op.drop_index("idx_features_module_order", table_name="features")
    op.drop_table("features")
    op.drop_table("module_versions")
    op.drop_index("idx_modules_deleted_at", table_name="modules")
    op.drop_index("idx_modules_scope_order", table_name="modules")
    op.drop_table("modules")
    op.drop_index("idx_audit_events_entity", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("project_members")
    op.drop_table("projects")
    op.drop_table("users")
