"""Atomic JSON file storage."""

import contextlib
import hashlib
import json
import os
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from exec_relay.core.exceptions import PersistenceError


def workspace_key(workspace_id: str) -> str:
    """Filesystem-safe, stable directory name for a workspace.

    Args:
        workspace_id: Caller-supplied workspace identifier

    Returns:
        16-character hex string derived from the id
    """
    return hashlib.sha256(workspace_id.encode("utf-8")).hexdigest()[:16]


async def atomic_write_text(path: Path, content: str) -> None:
    """Write text through a temp file and rename it into place.

    Readers see either the old file or the complete new one.

    Args:
        path: Target file path
        content: Serialized document
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(".tmp")

    try:
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(content)
            await f.flush()
            os.fsync(f.fileno())

        # rename over an existing file is atomic on POSIX
        await aiofiles.os.rename(temp_path, path)

    except OSError as e:
        with contextlib.suppress(FileNotFoundError):
            await aiofiles.os.remove(temp_path)

        raise PersistenceError(
            code="write_failed",
            message=f"Failed to write {path}: {e}",
            details={"path": str(path), "error": str(e)},
        ) from e


async def read_json(path: Path) -> dict[str, Any] | None:
    """Read a JSON document, or None if the file doesn't exist.

    Raises:
        PersistenceError: If the file is not valid JSON
    """
    try:
        async with aiofiles.open(path, encoding="utf-8") as f:
            data: dict[str, Any] = json.loads(await f.read())
            return data
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        raise PersistenceError(
            code="invalid_json",
            message=f"Invalid JSON in {path}: {e}",
            details={"path": str(path), "error": str(e)},
        ) from e


async def delete_file(path: Path) -> bool:
    """Delete a file; False if it didn't exist."""
    try:
        await aiofiles.os.remove(path)
        return True
    except FileNotFoundError:
        return False


def list_json_files(directory: Path) -> list[Path]:
    """All .json files in a directory, sorted by name."""
    if not directory.exists():
        return []
    return sorted(directory / name for name in os.listdir(directory) if name.endswith(".json"))
