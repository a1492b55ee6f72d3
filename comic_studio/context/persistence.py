"""
Project Persistence
===================

Active-slot and library storage for projects.

Each owner may keep a limited number of "active" in-progress projects
(three by default); the library is an unbounded archive. The slot limit is
enforced when saving, not when loading.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Union

from ..core.exceptions import PersistenceError
from ..project.models import ComicProject

logger = logging.getLogger(__name__)

DEFAULT_OWNER = "local"
DEFAULT_MAX_ACTIVE_SLOTS = 3
DEFAULT_MAX_PROJECT_BYTES = 50 * 1024 * 1024


class SaveStatus(Enum):
    OK = "ok"
    SLOTS_FULL = "slots_full"
    QUOTA_EXCEEDED = "quota_exceeded"


@dataclass
class SaveResult:
    """Typed outcome of a save; failures are returned, not raised."""

    status: SaveStatus
    project_id: str
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == SaveStatus.OK


class PersistenceStore(ABC):
    """Load/save/delete contract for project documents."""

    @abstractmethod
    async def load_active_projects(self, owner_id: str) -> List[ComicProject]:
        """Return the owner's in-progress projects, most recently modified first."""
        pass

    @abstractmethod
    async def save_active(self, project: ComicProject) -> SaveResult:
        """Save into an active slot; SLOTS_FULL or QUOTA_EXCEEDED on refusal."""
        pass

    @abstractmethod
    async def load_library(self, owner_id: str) -> List[ComicProject]:
        pass

    @abstractmethod
    async def save_to_library(self, project: ComicProject) -> SaveResult:
        pass

    @abstractmethod
    async def delete_active(self, project_id: str) -> None:
        pass

    @abstractmethod
    async def delete_library(self, project_id: str) -> None:
        pass


class SQLitePersistenceStore(PersistenceStore):
    """
    SQLite-backed project storage.

    Projects are stored as JSON documents with a few indexed columns for
    listing. Each table keeps one row per project id.
    """

    ACTIVE_TABLE = "active_projects"
    LIBRARY_TABLE = "library_projects"

    def __init__(
        self,
        db_path: Union[str, Path] = "./data/studio.db",
        max_active_slots: int = DEFAULT_MAX_ACTIVE_SLOTS,
        max_project_bytes: int = DEFAULT_MAX_PROJECT_BYTES,
    ):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database
            max_active_slots: Active projects allowed per owner
            max_project_bytes: Largest serialized document accepted
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_active_slots = max_active_slots
        self.max_project_bytes = max_project_bytes

        self._init_db()

    @classmethod
    def from_config(cls, config) -> "SQLitePersistenceStore":
        return cls(
            db_path=config.storage.db_path,
            max_active_slots=config.storage.max_active_slots,
            max_project_bytes=config.storage.max_project_bytes,
        )

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        for table in (self.ACTIVE_TABLE, self.LIBRARY_TABLE):
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    project_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT,
                    workflow_stage TEXT,
                    last_modified INTEGER,
                    data TEXT NOT NULL
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_owner
                ON {table}(owner_id)
            """)

        conn.commit()
        conn.close()

        logger.info(f"Initialized project database at {self.db_path}")

    # -------------------------------------------------------------------------
    # Active Slots
    # -------------------------------------------------------------------------

    async def load_active_projects(self, owner_id: str) -> List[ComicProject]:
        return self._load(self.ACTIVE_TABLE, owner_id)

    async def save_active(self, project: ComicProject) -> SaveResult:
        owner_id = project.owner_id or DEFAULT_OWNER
        payload = self._serialize(project)

        if len(payload.encode("utf-8")) > self.max_project_bytes:
            logger.warning(f"Project {project.id} exceeds storage quota")
            return SaveResult(
                status=SaveStatus.QUOTA_EXCEEDED,
                project_id=project.id,
                message=f"Project is larger than {self.max_project_bytes} bytes",
            )

        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT owner_id FROM {self.ACTIVE_TABLE} WHERE project_id = ?",
                (project.id,),
            )
            existing = cursor.fetchone()

            if existing is None:
                cursor.execute(
                    f"SELECT COUNT(*) FROM {self.ACTIVE_TABLE} WHERE owner_id = ?",
                    (owner_id,),
                )
                (count,) = cursor.fetchone()
                if count >= self.max_active_slots:
                    logger.warning(f"Active slots full for owner {owner_id} ({count}/{self.max_active_slots})")
                    return SaveResult(
                        status=SaveStatus.SLOTS_FULL,
                        project_id=project.id,
                        message=f"All {self.max_active_slots} active slots are in use",
                    )
            elif existing[0] != owner_id:
                raise PersistenceError(
                    "Project id already belongs to another owner",
                    project_id=project.id,
                )

            self._upsert(cursor, self.ACTIVE_TABLE, project, owner_id, payload)
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save project: {e}", project_id=project.id)
        finally:
            conn.close()

        logger.info(f"Saved active project {project.id}")
        return SaveResult(status=SaveStatus.OK, project_id=project.id)

    async def delete_active(self, project_id: str) -> None:
        self._delete(self.ACTIVE_TABLE, project_id)

    # -------------------------------------------------------------------------
    # Library
    # -------------------------------------------------------------------------

    async def load_library(self, owner_id: str) -> List[ComicProject]:
        return self._load(self.LIBRARY_TABLE, owner_id)

    async def save_to_library(self, project: ComicProject) -> SaveResult:
        owner_id = project.owner_id or DEFAULT_OWNER
        payload = self._serialize(project)

        if len(payload.encode("utf-8")) > self.max_project_bytes:
            return SaveResult(
                status=SaveStatus.QUOTA_EXCEEDED,
                project_id=project.id,
                message=f"Project is larger than {self.max_project_bytes} bytes",
            )

        conn = sqlite3.connect(self.db_path)
        try:
            self._upsert(conn.cursor(), self.LIBRARY_TABLE, project, owner_id, payload)
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to archive project: {e}", project_id=project.id)
        finally:
            conn.close()

        logger.info(f"Archived project {project.id} to library")
        return SaveResult(status=SaveStatus.OK, project_id=project.id)

    async def delete_library(self, project_id: str) -> None:
        self._delete(self.LIBRARY_TABLE, project_id)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _serialize(project: ComicProject) -> str:
        return json.dumps(project.to_dict(), ensure_ascii=False)

    @staticmethod
    def _upsert(cursor, table: str, project: ComicProject, owner_id: str, payload: str) -> None:
        cursor.execute(f"""
            INSERT OR REPLACE INTO {table} (
                project_id, owner_id, title, workflow_stage, last_modified, data
            ) VALUES (?, ?, ?, ?, ?, ?)
        """, (
            project.id,
            owner_id,
            project.title,
            project.workflow_stage.value,
            project.last_modified,
            payload,
        ))

    def _load(self, table: str, owner_id: str) -> List[ComicProject]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        cursor = conn.cursor()

        cursor.execute(f"""
            SELECT data FROM {table}
            WHERE owner_id = ?
            ORDER BY last_modified DESC
        """, (owner_id,))

        rows = cursor.fetchall()
        conn.close()

        projects = []
        for row in rows:
            try:
                projects.append(ComicProject.from_dict(json.loads(row["data"])))
            except (ValueError, KeyError) as e:
                logger.error(f"Skipping unreadable project in {table}: {e}")
        return projects

    def _delete(self, table: str, project_id: str) -> None:
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()
        cursor.execute(f"DELETE FROM {table} WHERE project_id = ?", (project_id,))
        deleted = cursor.rowcount
        conn.commit()
        conn.close()

        if deleted:
            logger.info(f"Deleted project {project_id} from {table}")
        else:
            logger.debug(f"No project {project_id} in {table}")
