"""Canonical relative paths and metadata derived from folder names."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from coordinator.models.asset import WorkflowStatus
from coordinator.services.style_group_service import SKU_FOLDER_PATTERN

DEFAULT_WORKFLOW_FOLDER_MAP: dict[str, str] = {
    "product ideas": WorkflowStatus.PRODUCT_IDEAS.value,
    "concept approved": WorkflowStatus.CONCEPT_APPROVED.value,
    "in development": WorkflowStatus.IN_DEVELOPMENT.value,
    "freelancer art": WorkflowStatus.FREELANCER_ART.value,
    "discontinued": WorkflowStatus.DISCONTINUED.value,
    "in process": WorkflowStatus.IN_PROCESS.value,
    "customer adopted": WorkflowStatus.CUSTOMER_ADOPTED.value,
    "licensor approved": WorkflowStatus.LICENSOR_APPROVED.value,
}

LICENSED_FOLDER_MARKER = "character licensed"

JUNK_FILENAMES = frozenset({".ds_store", ".localized", "thumbs.db", "desktop.ini"})
JUNK_FILENAME_PREFIXES = ("._", "~")
JUNK_FOLDERS = frozenset({"__macosx"})


@dataclass(frozen=True)
class PathMetadata:
    """Metadata derived from folder names alone."""

    workflow_status: str
    is_licensed: bool
    licensor_name: str | None = None
    property_name: str | None = None


def normalize_relative_path(raw: str, field: str = "relative_path") -> str:
    """Canonicalize an agent-supplied relative path.

    Backslashes become forward slashes and leading/trailing separators are
    stripped. Raises ValueError for empty paths and empty segments.
    """
    path = raw.strip().replace("\\", "/").strip("/")
    if not path:
        raise ValueError(f"{field} cannot be empty after normalization")
    if "//" in path:
        raise ValueError(f"{field} contains empty path segments (//)")
    return path


def is_junk(relative_path: str, filename: str) -> bool:
    """Whether the file is an OS or editor artifact that is never ingested."""
    name = filename.lower()
    if name in JUNK_FILENAMES or name.startswith(JUNK_FILENAME_PREFIXES):
        return True
    return any(segment.lower() in JUNK_FOLDERS for segment in relative_path.split("/"))


def is_in_allowed_subfolders(relative_path: str, allowed: Sequence[str]) -> bool:
    """Whether the path lies under one of ``allowed`` (case-insensitive).

    An empty allow-list accepts everything.
    """
    if not allowed:
        return True
    segments = [s.lower() for s in relative_path.split("/")]
    for entry in allowed:
        prefix = [s.lower() for s in entry.strip().replace("\\", "/").strip("/").split("/") if s]
        if prefix and segments[: len(prefix)] == prefix:
            return True
    return False


def derive_workflow_status(relative_path: str, folder_map: Mapping[str, str]) -> str:
    """Workflow status named by the deepest matching folder.

    A folder matches a map key when it contains that key, case-insensitively;
    within one folder the longest key wins.
    """
    keys = sorted(folder_map, key=len, reverse=True)
    for segment in reversed(relative_path.lower().split("/")[:-1]):
        for key in keys:
            if key.lower() in segment:
                return folder_map[key]
    return WorkflowStatus.OTHER.value


def derive_path_metadata(
    relative_path: str, folder_map: Mapping[str, str] | None = None
) -> PathMetadata:
    """Derive workflow status, licensing and licensor/property names.

    A path is licensed when one of its folders is named "Character Licensed".
    The first two folders below that marker which are neither workflow
    folders nor SKU folders name the licensor and the property.
    """
    folder_map = DEFAULT_WORKFLOW_FOLDER_MAP if folder_map is None else folder_map
    workflow_status = derive_workflow_status(relative_path, folder_map)

    folders = relative_path.split("/")[:-1]
    marker_index = next(
        (i for i, f in enumerate(folders) if f.strip().lower() == LICENSED_FOLDER_MARKER),
        None,
    )
    if marker_index is None:
        return PathMetadata(workflow_status=workflow_status, is_licensed=False)

    workflow_keys = [k.lower() for k in folder_map]
    names = [
        folder
        for folder in folders[marker_index + 1 :]
        if not SKU_FOLDER_PATTERN.match(folder)
        and not any(key in folder.lower() for key in workflow_keys)
    ]
    return PathMetadata(
        workflow_status=workflow_status,
        is_licensed=True,
        licensor_name=names[0] if names else None,
        property_name=names[1] if len(names) > 1 else None,
    )
