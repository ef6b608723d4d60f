from __future__ import annotations

from pathlib import Path

from chitchat.errors import FilesystemError


def resolve_storage_path(root: Path | str, storage_path: str) -> Path:
    """Resolve an attachment's stored relative path against a storage root.

    Raises FilesystemError for empty or absolute paths and for anything that
    resolves outside the root, whether through ``..`` segments or a symlink.
    """
    if not isinstance(storage_path, str) or not storage_path.strip() or "\x00" in storage_path:
        raise FilesystemError("Invalid storage path")

    relative = Path(storage_path)
    if relative.is_absolute() or relative.drive:
        raise FilesystemError(f"Invalid storage path {storage_path!r}: absolute paths are not allowed")

    try:
        root_path = Path(root).expanduser().resolve()
        candidate = (root_path / relative).resolve()
    except (OSError, RuntimeError) as exc:
        raise FilesystemError(f"Invalid storage path {storage_path!r}: {exc}") from exc

    if candidate == root_path or not candidate.is_relative_to(root_path):
        raise FilesystemError(f"Invalid storage path {storage_path!r}: escapes storage root")
    return candidate
