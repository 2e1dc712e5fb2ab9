from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.featuremap.models import Base, new_id

FEATURE_PRIORITIES = ("LOW", "MEDIUM", "HIGH")
FEATURE_STATUSES = ("PENDING", "IN_PROGRESS", "DONE")


class Module(Base):
    __tablename__ = "modules"
    __table_args__ = (
        Index("idx_modules_scope_order", "project_id", "parent_module_id", "sort_order"),
        Index("idx_modules_deleted_at", "deleted_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    # NULL = top level of the project
    parent_module_id: Mapped[str | None] = mapped_column(
        ForeignKey("modules.id", ondelete="SET NULL"),
        nullable=True,
    )

    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_root: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    published_version_id: Mapped[str | None] = mapped_column(
        ForeignKey("module_versions.id", ondelete="SET NULL", use_alter=True, name="fk_modules_published_version"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    last_modified_by_user_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_by_user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    published_version: Mapped["ModuleVersion | None"] = relationship(
        "ModuleVersion",
        foreign_keys=[published_version_id],
        lazy="selectin",
        post_update=True,
    )


class ModuleVersion(Base):
    """
    Immutable snapshot of a module. Pins are stored in sibling order at snapshot
    time: [{"child_id": ..., "version_number": ...}, ...].
    """

    __tablename__ = "module_versions"
    __table_args__ = (
        UniqueConstraint("module_id", "version_number", name="uq_module_version_number"),
        UniqueConstraint("module_id", "content_hash", name="uq_module_version_hash"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    module_id: Mapped[str] = mapped_column(ForeignKey("modules.id", ondelete="CASCADE"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_module_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    is_root: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    children_pins: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    feature_pins: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    changelog: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_rollback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class Feature(Base):
    __tablename__ = "features"
    __table_args__ = (
        Index("idx_features_module_order", "module_id", "sort_order"),
        Index("idx_features_deleted_at", "deleted_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    module_id: Mapped[str] = mapped_column(ForeignKey("modules.id", ondelete="CASCADE"), nullable=False)

    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str | None] = mapped_column(String(16), nullable=True, default="MEDIUM")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    # Shares the ordering namespace with child modules of the same parent module.
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    published_version_id: Mapped[str | None] = mapped_column(
        ForeignKey("feature_versions.id", ondelete="SET NULL", use_alter=True, name="fk_features_published_version"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    last_modified_by_user_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_by_user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    published_version: Mapped["FeatureVersion | None"] = relationship(
        "FeatureVersion",
        foreign_keys=[published_version_id],
        lazy="selectin",
        post_update=True,
    )


class FeatureVersion(Base):
    __tablename__ = "feature_versions"
    __table_args__ = (
        UniqueConstraint("feature_id", "version_number", name="uq_feature_version_number"),
        UniqueConstraint("feature_id", "content_hash", name="uq_feature_version_hash"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    feature_id: Mapped[str] = mapped_column(ForeignKey("features.id", ondelete="CASCADE"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str | None] = mapped_column(String(16), nullable=True)
    status: Mapped[str | None] = mapped_column(String(16), nullable=True)

    changelog: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_rollback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
