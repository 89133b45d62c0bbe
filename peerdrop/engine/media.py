"""
File helpers for the transfer engine.

Reading files to send, MIME type detection and choosing where to save a
received file without overwriting an existing one.
"""

import logging
import mimetypes
from pathlib import Path

logger = logging.getLogger(__name__)

# Initialize mimetypes
mimetypes.init()

DEFAULT_MIME_TYPE = "application/octet-stream"


def detect_mime_type(file_path: str | Path) -> str:
    """
    Detect MIME type from file path.

    Args:
        file_path: Path to the file

    Returns:
        MIME type string (e.g., 'image/jpeg')
    """
    mime_type, _ = mimetypes.guess_type(str(file_path))
    return mime_type or DEFAULT_MIME_TYPE


def format_file_size(size_bytes: int) -> str:
    """Human-readable size."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def read_file(file_path: str | Path) -> tuple[str, str, bytes]:
    """
    Load a file for sending.

    Returns:
        (file name, MIME type, contents)

    Raises:
        FileNotFoundError: If the path is missing or not a file
    """
    path = Path(file_path).expanduser()
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    data = path.read_bytes()
    logger.debug(f"Loaded {path.name} ({format_file_size(len(data))})")
    return path.name, detect_mime_type(path), data


def safe_file_name(file_name: str) -> str:
    """Strip directory components from a peer-supplied name."""
    name = Path(file_name.replace("\\", "/")).name
    if name in ("", ".", ".."):
        return "file"
    return name


def unique_path(directory: Path, file_name: str) -> Path:
    """Path in directory that does not exist yet, adding _1, _2... if needed."""
    save_path = directory / safe_file_name(file_name)
    if save_path.exists():
        stem = save_path.stem
        suffix = save_path.suffix
        counter = 1
        while save_path.exists():
            save_path = directory / f"{stem}_{counter}{suffix}"
            counter += 1
    return save_path
