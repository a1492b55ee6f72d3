"""
Storage Utilities
=================

Zip backup of a project document and helpers for exporting assets.
"""

import base64
import json
import logging
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from ..core.exceptions import ValidationError
from ..core.security import sanitize_filename
from ..project.models import ComicProject, new_id, now_ms

logger = logging.getLogger(__name__)

PROJECT_ENTRY = "project.json"
README_ENTRY = "README.txt"


def export_project_zip(
    project: ComicProject,
    output_dir: Union[str, Path],
    filename: Optional[str] = None,
) -> str:
    """
    Write a project backup archive.

    Args:
        project: Project to export
        output_dir: Directory for the archive
        filename: Archive name (defaults to the sanitized title)

    Returns:
        Path to the written archive
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    name = filename or f"{sanitize_filename(project.title or project.id)}_backup.zip"
    output_path = output_dir / name

    readme = (
        f"Comic Studio backup\n"
        f"Title: {project.title or '(untitled)'}\n"
        f"Project ID: {project.id}\n"
        f"Stage: {project.workflow_stage.value}\n"
        f"Panels: {len(project.panels)}\n"
        f"Characters: {len(project.characters)}\n"
        f"Exported: {datetime.now().isoformat()}\n"
        f"\nImport {PROJECT_ENTRY} back into Comic Studio to restore.\n"
    )

    with zipfile.ZipFile(output_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(PROJECT_ENTRY, json.dumps(project.to_dict(), indent=2, ensure_ascii=False))
        archive.writestr(README_ENTRY, readme)

    logger.info(f"Project exported to {output_path}")
    return str(output_path)


def import_project_zip(path: Union[str, Path]) -> ComicProject:
    """
    Read a project backup archive.

    The imported project gets a fresh id so it never collides with the
    project it was exported from.

    Raises:
        ValidationError: If the archive is not a valid backup
    """
    path = Path(path)
    try:
        with zipfile.ZipFile(path, "r") as archive:
            if PROJECT_ENTRY not in archive.namelist():
                raise ValidationError(
                    f"Archive has no {PROJECT_ENTRY}",
                    field="archive",
                    value=path.name,
                )
            data = json.loads(archive.read(PROJECT_ENTRY).decode("utf-8"))
    except (zipfile.BadZipFile, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Invalid project archive: {e}", field="archive", value=path.name) from e

    if not isinstance(data, dict) or "title" not in data or not isinstance(data.get("panels"), list):
        raise ValidationError(
            "Project file is missing title or panels",
            field=PROJECT_ENTRY,
            constraint="requires title and panels",
        )

    data["id"] = new_id("proj")
    data["last_modified"] = now_ms()
    try:
        project = ComicProject.from_dict(data)
    except (KeyError, ValueError, TypeError) as e:
        raise ValidationError(f"Project file is malformed: {e}", field=PROJECT_ENTRY) from e

    logger.info(f"Imported project '{project.title}' as {project.id}")
    return project


def save_data_url(data_url: str, output_path: Union[str, Path]) -> str:
    """Decode a base64 data URL to a file."""
    header, _, payload = data_url.partition(",")
    if not header.startswith("data:") or ";base64" not in header:
        raise ValidationError("Not a base64 data URL", field="data_url", value=header)

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "wb") as f:
        f.write(base64.b64decode(payload))

    logger.debug(f"Asset saved to {output_path}")
    return str(output_path)
