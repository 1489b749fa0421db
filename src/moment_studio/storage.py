"""Local artifact storage for session snapshots and generated assets."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any

from .config import settings
from .serialization import dumps


def session_dir_name(session_id: str) -> str:
    return f"session_{session_id}"


def moment_dir_name(index: int) -> str:
    return f"moment_{index:02d}"


def sequence_dir_name(order: int, sequence_type: str) -> str:
    return f"seq_{order:02d}_{sequence_type}"


class ArtifactStorage:
    """Basic local storage layer rooted at a single directory."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = Path(root or settings.output_root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, *parts: str) -> Path:
        path = self.root.joinpath(*parts)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def resolve(self, relative_path: str) -> Path:
        return self.root / relative_path

    def save_text(self, relative_path: str, content: str) -> str:
        path = self._path(relative_path)
        path.write_text(content, encoding="utf-8")
        return str(path)

    def save_json(self, relative_path: str, data: Any) -> str:
        return self.save_text(relative_path, dumps(data, indent=2))

    def save_bytes(self, relative_path: str, payload: bytes) -> str:
        path = self._path(relative_path)
        path.write_bytes(payload)
        return str(path)

    def read_bytes(self, relative_path: str) -> bytes:
        return self.resolve(relative_path).read_bytes()

    def exists(self, relative_path: str) -> bool:
        return self.resolve(relative_path).exists()

    def snapshot_path(self, session_id: str) -> str:
        return f"{session_dir_name(session_id)}/state.json"

    def moment_dir(self, session_id: str, moment_index: int) -> str:
        return f"{session_dir_name(session_id)}/{moment_dir_name(moment_index)}"

    def sequence_dir(self, session_id: str, moment_index: int, order: int, sequence_type: str) -> str:
        return f"{self.moment_dir(session_id, moment_index)}/{sequence_dir_name(order, sequence_type)}"


def content_digest(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()
