"""Archive of finished runs, kept beyond the in-memory retention window."""

import logging
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ValidationError

from exec_relay.config import settings
from exec_relay.core.exceptions import PersistenceError
from exec_relay.models.events import Event
from exec_relay.models.problems import Problem
from exec_relay.models.session import SessionInfo
from exec_relay.persistence.storage import (
    atomic_write_text,
    delete_file,
    list_json_files,
    read_json,
    workspace_key,
)

logger = logging.getLogger(__name__)


class ArchivedRun(BaseModel):
    """A terminal session with its full event log."""

    session: SessionInfo
    source: str
    events: list[Event]
    problems: list[Problem]
    archived_at: datetime


class RunArchive:
    """Stores finished runs as one JSON file each.

    Layout: ``<base_dir>/<workspace key>/<session id>.json``. Session ids
    embed a time-ordered prefix, so sorting file names gives run order.
    """

    def __init__(self, base_dir: Path | None = None, keep_per_workspace: int | None = None):
        """Initialize the archive.

        Args:
            base_dir: Directory for archived runs (defaults to settings)
            keep_per_workspace: Runs kept per workspace, oldest pruned first
                (defaults to settings)
        """
        self.base_dir = base_dir or settings.runs_dir
        self.keep_per_workspace = keep_per_workspace or settings.archive_keep_per_workspace

    def _workspace_dir(self, workspace_id: str) -> Path:
        return self.base_dir / workspace_key(workspace_id)

    def _get_path(self, workspace_id: str, session_id: str) -> Path:
        return self._workspace_dir(workspace_id) / f"{session_id}.json"

    async def save(self, run: ArchivedRun) -> None:
        """Archive a finished run and prune the workspace's oldest runs."""
        info = run.session
        await atomic_write_text(
            self._get_path(info.workspace_id, info.id),
            run.model_dump_json(indent=2),
        )
        logger.debug(f"Archived session {info.id} ({len(run.events)} events)")

        if self.keep_per_workspace:
            await self.prune(info.workspace_id, self.keep_per_workspace)

    async def load(self, workspace_id: str, session_id: str) -> ArchivedRun | None:
        """Load one archived run, or None if it isn't archived."""
        data = await read_json(self._get_path(workspace_id, session_id))
        if data is None:
            return None
        try:
            return ArchivedRun.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Failed to parse archived session {session_id}: {e}")
            return None

    async def list_workspace(self, workspace_id: str) -> list[ArchivedRun]:
        """Archived runs of a workspace, oldest first."""
        runs: list[ArchivedRun] = []
        for path in list_json_files(self._workspace_dir(workspace_id)):
            try:
                data = await read_json(path)
            except PersistenceError as e:
                logger.warning(f"Skipping unreadable archive {path}: {e.message}")
                continue
            if not data:
                continue
            try:
                runs.append(ArchivedRun.model_validate(data))
            except ValidationError as e:
                logger.warning(f"Failed to parse {path}: {e}")
        return runs

    async def delete(self, workspace_id: str, session_id: str) -> bool:
        return await delete_file(self._get_path(workspace_id, session_id))

    async def prune(self, workspace_id: str, keep: int) -> int:
        """Remove all but the newest ``keep`` runs of a workspace.

        Returns:
            Number of runs removed
        """
        files = list_json_files(self._workspace_dir(workspace_id))
        removed = 0
        for path in files[: max(len(files) - keep, 0)]:
            if await delete_file(path):
                removed += 1
        if removed:
            logger.info(f"Pruned {removed} archived runs of workspace {workspace_id}")
        return removed
