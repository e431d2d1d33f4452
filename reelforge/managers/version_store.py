"""
Append-only version history for pipeline entities.

Each Version row stores a JSON snapshot of an entity's descriptive columns. Numbers
per (entity_type, entity_id) run 1, 2, 3... with no gaps; concurrent writers are kept
apart by the table's unique constraint and a bounded retry.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from reelforge.database import engine as default_engine, Version
from reelforge.entities import EntityKind, get_kind, take_snapshot, apply_snapshot
from reelforge.errors import CrossEntityComparison, NotFoundError, ReelforgeError
from reelforge.schemas import FieldDifference

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_INSERT_ATTEMPTS = 3


class VersionStore:
    def __init__(self, engine=None, max_insert_attempts: int = MAX_INSERT_ATTEMPTS):
        self.engine = engine or default_engine
        self.max_insert_attempts = max_insert_attempts

    def _transaction(self, work: Callable[[Session], T]) -> T:
        """Runs `work` in its own session; a version number collision rolls back and retries."""
        for attempt in range(self.max_insert_attempts):
            with Session(self.engine) as session:
                result = work(session)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.warning(f"Version number collision, retrying ({attempt + 1}/{self.max_insert_attempts})")
                    continue
                session.refresh(result)
                return result
        raise ReelforgeError("Could not allocate a version number",
                             {"attempts": self.max_insert_attempts})

    @staticmethod
    def _latest_number(session: Session, entity_type: str, entity_id: str) -> int:
        latest = session.exec(
            select(func.max(Version.version_number))
            .where(Version.entity_type == entity_type)
            .where(Version.entity_id == entity_id)
        ).first()
        return latest or 0

    def _add_version(self, session: Session, kind: EntityKind, entity_id: str, snapshot: Dict[str, Any],
                     name: Optional[str], summary: Optional[str], author: Optional[str]) -> Version:
        version = Version(
            entity_type=kind.tag,
            entity_id=entity_id,
            version_number=self._latest_number(session, kind.tag, entity_id) + 1,
            version_name=name,
            snapshot=snapshot,
            change_summary=summary,
            created_by=author,
        )
        session.add(version)
        return version

    # ── Public API ────────────────────────────────────────────────

    def create_version(self, entity_type: str, entity_id: str, snapshot: Dict[str, Any],
                       name: str = None, summary: str = None, author: str = None) -> Version:
        kind = get_kind(entity_type)

        def work(session: Session) -> Version:
            if not kind.exists(session, entity_id):
                raise NotFoundError(entity_type, entity_id)
            return self._add_version(session, kind, entity_id, snapshot, name, summary, author)

        version = self._transaction(work)
        logger.info(f"Created {entity_type} {entity_id} version {version.version_number}")
        return version

    def snapshot_entity(self, entity_type: str, entity_id: str,
                        name: str = None, summary: str = None, author: str = None) -> Version:
        """Captures the entity's live state as a new version."""
        kind = get_kind(entity_type)

        def work(session: Session) -> Version:
            entity = session.get(kind.model, entity_id)
            if entity is None:
                raise NotFoundError(entity_type, entity_id)
            return self._add_version(session, kind, entity_id, take_snapshot(entity), name, summary, author)

        return self._transaction(work)

    def list_versions(self, entity_type: str, entity_id: str) -> List[Version]:
        """Newest first. History outlives the entity, so a deleted entity still lists."""
        get_kind(entity_type)
        with Session(self.engine) as session:
            return list(session.exec(
                select(Version)
                .where(Version.entity_type == entity_type)
                .where(Version.entity_id == entity_id)
                .order_by(Version.version_number.desc())
            ).all())

    def get_version(self, version_id: str) -> Version:
        with Session(self.engine) as session:
            version = session.get(Version, version_id)
        if not version:
            raise NotFoundError("version", version_id)
        return version

    def get_version_by_number(self, entity_type: str, entity_id: str, version_number: int) -> Version:
        with Session(self.engine) as session:
            version = session.exec(
                select(Version)
                .where(Version.entity_type == entity_type)
                .where(Version.entity_id == entity_id)
                .where(Version.version_number == version_number)
            ).first()
        if not version:
            raise NotFoundError("version", f"{entity_type}:{entity_id}:v{version_number}")
        return version

    def get_current_version_number(self, entity_type: str, entity_id: str) -> int:
        get_kind(entity_type)
        with Session(self.engine) as session:
            return self._latest_number(session, entity_type, entity_id)

    def restore_version(self, version_id: str):
        """
        Overwrites the live entity with the version's snapshot and appends a new
        "Restored from vN" entry, in one transaction. Returns the restored entity.
        """
        def work(session: Session) -> Version:
            version = session.get(Version, version_id)
            if not version:
                raise NotFoundError("version", version_id)
            kind = get_kind(version.entity_type)
            entity = session.get(kind.model, version.entity_id)
            if entity is None:
                raise NotFoundError(version.entity_type, version.entity_id)

            apply_snapshot(entity, version.snapshot)
            if kind.bumps_version:
                entity.version = (entity.version or 0) + 1
            session.add(entity)

            return self._add_version(
                session, kind, version.entity_id, dict(version.snapshot),
                name=f"Restored from v{version.version_number}",
                summary=f"Restored to version {version.version_number}",
                author=None,
            )

        new_version = self._transaction(work)

        with Session(self.engine) as session:
            entity = session.get(get_kind(new_version.entity_type).model, new_version.entity_id)
        logger.info(f"Restored {new_version.entity_type} {new_version.entity_id} "
                    f"({new_version.version_name}, now history v{new_version.version_number})")
        return entity

    def compare_versions(self, version_id_1: str, version_id_2: str) -> Dict[str, FieldDifference]:
        v1 = self.get_version(version_id_1)
        v2 = self.get_version(version_id_2)
        if (v1.entity_type, v1.entity_id) != (v2.entity_type, v2.entity_id):
            raise CrossEntityComparison((v1.entity_type, v1.entity_id), (v2.entity_type, v2.entity_id))

        snap1, snap2 = v1.snapshot or {}, v2.snapshot or {}
        differences = {}
        for field in sorted(set(snap1) | set(snap2)):
            value1, value2 = snap1.get(field), snap2.get(field)
            differences[field] = FieldDifference(value1=value1, value2=value2, changed=value1 != value2)
        return differences
