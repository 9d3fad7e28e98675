from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from briefing.config import get_settings

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredFile:
    filename: str
    path: Path
    size: int


def save_upload(content: bytes, original_name: str) -> StoredFile:
    """Write uploaded bytes under the uploads dir with a random name, keeping the extension."""
    directory = get_settings().uploads_dir
    directory.mkdir(parents=True, exist_ok=True)
    filename = f"{uuid.uuid4()}{Path(original_name or '').suffix.lower()}"
    path = directory / filename
    path.write_bytes(content)
    return StoredFile(filename=filename, path=path, size=len(content))


def delete_stored(path: str | Path | None) -> None:
    if not path:
        return
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as exc:
        log.warning("Could not delete stored file %s: %s", path, exc)
