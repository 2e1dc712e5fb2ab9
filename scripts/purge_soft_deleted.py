"""
Hard-delete modules/features that have been soft-deleted for longer than
PURGE_AFTER_MONTHS (default 6). Meant to run from cron.

Nodes still pinned by a version row of a surviving module are kept, so
published trees keep resolving.

Usage:
  python scripts/purge_soft_deleted.py [--dry-run]
"""

from __future__ import annotations

import argparse
import calendar
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import delete, select

from app.featuremap.modules.structure.models import Feature, Module, ModuleVersion
from scripts._db_utils import script_session

logger = logging.getLogger("purge_soft_deleted")


def subtract_months(value: datetime, months: int) -> datetime:
    """Same day `months` earlier, clamped to the last day of a shorter month."""
    total = value.year * 12 + (value.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _pinned_ids(s, purge_module_ids: set[str]) -> tuple[set[str], set[str]]:
    modules: set[str] = set()
    features: set[str] = set()
    rows = s.execute(select(ModuleVersion.module_id, ModuleVersion.children_pins, ModuleVersion.feature_pins)).all()
    for module_id, children_pins, feature_pins in rows:
        if module_id in purge_module_ids:
            continue
        modules.update(p["child_id"] for p in children_pins or [])
        features.update(p["child_id"] for p in feature_pins or [])
    return modules, features


def purge(database_url: str, *, months: int, dry_run: bool = False, now: datetime | None = None) -> dict:
    cutoff = subtract_months(now or datetime.utcnow(), months)
    with script_session(database_url) as s:
        module_ids = set(s.scalars(select(Module.id).where(Module.deleted_at.isnot(None), Module.deleted_at <= cutoff)))
        feature_ids = set(
            s.scalars(select(Feature.id).where(Feature.deleted_at.isnot(None), Feature.deleted_at <= cutoff))
        )

        # Repeat until stable: a kept module keeps what its own versions pin.
        kept_modules: set[str] = set()
        while True:
            candidates = module_ids - kept_modules
            pinned_modules, pinned_features = _pinned_ids(s, candidates)
            owners = (
                set(s.scalars(select(Feature.module_id).where(Feature.id.in_(pinned_features))))
                if pinned_features
                else set()
            )
            more = candidates & (pinned_modules | owners)
            if not more:
                break
            kept_modules |= more
        module_ids -= kept_modules
        feature_ids -= pinned_features
        if kept_modules:
            feature_ids -= set(s.scalars(select(Feature.id).where(Feature.module_id.in_(kept_modules))))

        result = {
            "cutoff": cutoff.isoformat(),
            "deleted_features": len(feature_ids),
            "deleted_modules": len(module_ids),
            "kept_pinned_modules": len(kept_modules),
            "dry_run": dry_run,
        }
        if dry_run:
            s.rollback()
            return result

        if feature_ids:
            s.execute(delete(Feature).where(Feature.id.in_(feature_ids)).execution_options(synchronize_session=False))
        if module_ids:
            # parent links are ON DELETE SET NULL, so order does not matter
            s.execute(delete(Module).where(Module.id.in_(module_ids)).execution_options(synchronize_session=False))
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--months", type=int, default=int(os.environ.get("PURGE_AFTER_MONTHS") or 6))
    args = parser.parse_args()

    logging.basicConfig(level=(os.environ.get("LOG_LEVEL") or "INFO").upper())
    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///featuremap.db").strip()
    try:
        result = purge(db_url, months=args.months, dry_run=args.dry_run)
    except Exception:
        logger.exception("Soft-deleted purge failed")
        raise SystemExit(1)
    logger.info("Soft-deleted purge complete: %s", result)


if __name__ == "__main__":
    main()
