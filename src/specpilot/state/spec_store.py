from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from specpilot.errors import ProtectedPathError, SpecStoreError

logger = logging.getLogger(__name__)

BACKUP_MARKER = ".bak."


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` so readers see either the old or the new content.

    The payload goes to a temporary file in the same directory, is fsynced, and
    then renamed over the target. On any failure the temporary file is removed
    and the target is left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


@dataclass(slots=True)
class SpecFile:
    path: str
    content_hash: str
    backup_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "content_hash": self.content_hash,
            "backup_path": self.backup_path,
        }


class SpecStore:
    """Single write path for every file the correction loop touches.

    Each mutation snapshots the current content to ``<path>.bak.<timestamp>``
    before the new content is committed with an atomic rename.
    """

    def __init__(
        self,
        root: Path,
        *,
        max_backups: int = 10,
        protected_paths: list[str] | None = None,
        manifest_path: Path | None = None,
    ) -> None:
        self.root = root.resolve()
        self.max_backups = max(1, int(max_backups))
        self.protected_paths = list(protected_paths or [])
        self.manifest_path = manifest_path

    def resolve(self, path: str | Path) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if not resolved.is_relative_to(self.root):
            raise SpecStoreError(f"Refusing to touch {resolved.as_posix()}: outside {self.root}")
        return resolved

    def relative(self, path: str | Path) -> str:
        return self.resolve(path).relative_to(self.root).as_posix()

    def check_writable(self, path: str | Path) -> None:
        relative = self.relative(path)
        for pattern in self.protected_paths:
            if fnmatch.fnmatch(relative, pattern):
                raise ProtectedPathError(relative, pattern)

    def exists(self, path: str | Path) -> bool:
        return self.resolve(path).is_file()

    def read_text(self, path: str | Path) -> str:
        resolved = self.resolve(path)
        try:
            return resolved.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise SpecStoreError(f"File not found: {self.relative(resolved)}") from exc

    def describe(self, path: str | Path) -> SpecFile:
        return SpecFile(path=self.relative(path), content_hash=content_hash(self.read_text(path)))

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")

    @staticmethod
    def _sanitize_label(label: str) -> str:
        safe = re.sub(r"[^a-zA-Z0-9._-]+", "-", label.strip().lower())
        return safe.strip("-") or "snapshot"

    def _backup_path_for(self, target: Path) -> Path:
        stamp = self._timestamp()
        backup = target.with_name(f"{target.name}{BACKUP_MARKER}{stamp}")
        counter = 1
        while backup.exists():
            backup = target.with_name(f"{target.name}{BACKUP_MARKER}{stamp}-{counter}")
            counter += 1
        return backup

    def snapshot(self, path: str | Path, label: str | None = None) -> str:
        """Copy the current content of ``path`` to a new backup and return its id."""
        target = self.resolve(path)
        if not target.is_file():
            raise SpecStoreError(f"Cannot snapshot missing file: {self.relative(target)}")
        content = target.read_text(encoding="utf-8")
        backup = self._backup_path_for(target)
        try:
            atomic_write_text(backup, content)
        except OSError as exc:
            raise SpecStoreError(f"Failed to create backup for {self.relative(target)}: {exc}") from exc

        backup_id = self.relative(backup)
        self._record_backup(
            {
                "backup_id": backup_id,
                "path": self.relative(target),
                "label": self._sanitize_label(label or "snapshot"),
                "content_hash": content_hash(content),
                "created_at": _utcnow_iso(),
            }
        )
        self._prune_backups(target)
        logger.debug("snapshot %s -> %s", self.relative(target), backup_id)
        return backup_id

    def write(self, path: str | Path, content: str, *, label: str | None = None) -> SpecFile:
        target = self.resolve(path)
        self.check_writable(target)
        backup_id: str | None = None
        if target.exists():
            backup_id = self.snapshot(target, label=label)
        try:
            atomic_write_text(target, content)
        except OSError as exc:
            raise SpecStoreError(f"Atomic write failed for {self.relative(target)}: {exc}") from exc
        return SpecFile(
            path=self.relative(target),
            content_hash=content_hash(content),
            backup_path=backup_id,
        )

    def list_backups(self, path: str | Path) -> list[str]:
        target = self.resolve(path)
        if not target.parent.exists():
            return []
        prefix = f"{target.name}{BACKUP_MARKER}"
        backups = [item for item in target.parent.iterdir() if item.name.startswith(prefix)]
        backups.sort(key=lambda item: item.name, reverse=True)
        return [self.relative(item) for item in backups]

    def restore(self, backup_id: str, path: str | Path | None = None) -> SpecFile:
        backup = self.resolve(backup_id)
        if not backup.is_file():
            raise SpecStoreError(f"Backup not found: {backup_id}")
        if path is None:
            name, marker, _stamp = backup.name.rpartition(BACKUP_MARKER)
            if not marker:
                raise SpecStoreError(f"Not a backup file: {backup_id}")
            target = backup.with_name(name)
        else:
            target = self.resolve(path)
        content = backup.read_text(encoding="utf-8")
        return self.write(target, content, label="restore")

    def _prune_backups(self, target: Path) -> None:
        for stale in self.list_backups(target)[self.max_backups :]:
            try:
                self.resolve(stale).unlink()
            except FileNotFoundError:
                pass

    def _read_manifest(self) -> list[dict[str, Any]]:
        if self.manifest_path is None or not self.manifest_path.exists():
            return []
        try:
            payload = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return []
        backups = payload.get("backups", []) if isinstance(payload, dict) else []
        return [item for item in backups if isinstance(item, dict)]

    def _record_backup(self, entry: dict[str, Any]) -> None:
        if self.manifest_path is None:
            return
        backups = self._read_manifest()
        backups.append(entry)
        payload = {"backups": backups[-500:]}
        atomic_write_text(self.manifest_path, json.dumps(payload, ensure_ascii=False, indent=2))

    def backup_manifest(self, path: str | Path | None = None) -> list[dict[str, Any]]:
        entries = self._read_manifest()
        if path is None:
            return entries
        relative = self.relative(path)
        return [item for item in entries if item.get("path") == relative]
