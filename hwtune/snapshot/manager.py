"""
Backup manager - timestamped backups of generated paths and cleanup.

Layout (compatible with the shell tools this replaces):

    <backup_root>/<tool>-optimize-YYYYmmdd-HHMMSS[-N]/
        manifest.json
        files/<absolute host path>

A backup is taken once per apply run, before the first mutation of each
path. Re-applying without a cleanup in between carries the earlier
original forward, so cleanup always returns to the pre-tuning state.
"""

import hashlib
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from ..discovery.host import HostFS
from .models import BackupManifest, BackupRecord, CleanupEntry, RestoreAction

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_ROOT = "/var/backups"


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for block in iter(lambda: f.read(65536), b''):
            digest.update(block)
    return digest.hexdigest()


class BackupHandle:
    """The backup directory of one apply run."""

    def __init__(self, manager: "BackupManager", directory: Path, manifest: BackupManifest,
                 previous: Optional[Path] = None):
        self.manager = manager
        self.directory = directory
        self.manifest = manifest
        self._previous = previous
        self._previous_manifest = BackupManifest.load(previous) if previous else None

    @property
    def files_dir(self) -> Path:
        return self.directory / "files"

    def backup_path(self, host_path: str) -> Path:
        return self.files_dir / host_path.lstrip("/")

    def snapshot(self, host_path: str) -> BackupRecord:
        """
        Record the original state of a path (first call per path only).

        Returns:
            The BackupRecord stored in the manifest
        """
        if host_path in self.manifest.records:
            return self.manifest.records[host_path]

        record = self._inherit(host_path)
        if record is None:
            source = self.manager.fs.path(host_path)
            if source.is_file():
                dest = self.backup_path(host_path)
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest)
                record = BackupRecord(path=host_path, existed=True, sha256=_sha256(dest))
                logger.info("Backed up: %s", host_path)
            else:
                record = BackupRecord(path=host_path, existed=False)

        self.manifest.records[host_path] = record
        self.manifest.save(self.directory)
        return record

    def _inherit(self, host_path: str) -> Optional[BackupRecord]:
        if self._previous_manifest is None:
            return None
        earlier = self._previous_manifest.records.get(host_path)
        if earlier is None:
            return None

        if earlier.existed:
            source = self._previous / "files" / host_path.lstrip("/")
            if not source.is_file():
                return None
            dest = self.backup_path(host_path)
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        logger.debug("%s: original carried over from %s", host_path, self._previous.name)
        return BackupRecord(
            path=host_path,
            existed=earlier.existed,
            sha256=earlier.sha256,
            inherited_from=earlier.inherited_from or self._previous.name,
        )


class BackupManager:
    """Creates backups before apply and restores them on cleanup."""

    def __init__(
        self,
        fs: HostFS,
        tool: str,
        backup_root: str = DEFAULT_BACKUP_ROOT,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize backup manager.

        Args:
            fs: Host filesystem view (backups live under its root too)
            tool: "network" or "system"
            backup_root: Absolute host path of the backup parent directory
            clock: Time source for directory names
        """
        self.fs = fs
        self.tool = tool
        self.prefix = f"{tool}-optimize"
        self.root = fs.path(backup_root)
        self.clock = clock

    # =========================================================================
    # Backup
    # =========================================================================

    def backup_dirs(self) -> List[Path]:
        """Backup directories of this tool, oldest first."""
        if not self.root.is_dir():
            return []
        dirs = [d for d in self.root.iterdir()
                if d.is_dir() and d.name.startswith(f"{self.prefix}-")]
        return sorted(dirs, key=self._age_key)

    def _age_key(self, directory: Path) -> Tuple[float, str, int]:
        """Modification time, then name timestamp, then same-second suffix."""
        parts = directory.name[len(self.prefix) + 1:].split("-")
        suffix = int(parts[2]) if len(parts) > 2 and parts[2].isdigit() else 0
        return directory.stat().st_mtime, "-".join(parts[:2]), suffix

    def latest_backup_dir(self) -> Optional[Path]:
        dirs = self.backup_dirs()
        return dirs[-1] if dirs else None

    def _open_previous(self) -> Optional[Path]:
        """Latest backup whose originals have not been restored yet."""
        latest = self.latest_backup_dir()
        if latest is None:
            return None
        manifest = BackupManifest.load(latest)
        if manifest is None or manifest.restored_at:
            return None
        return latest

    def begin_backup(self) -> BackupHandle:
        """Create this run's timestamped backup directory."""
        now = self.clock()
        name = f"{self.prefix}-{now.strftime('%Y%m%d-%H%M%S')}"
        directory = self.root / name
        suffix = 1
        while directory.exists():
            directory = self.root / f"{name}-{suffix}"
            suffix += 1

        previous = self._open_previous()
        directory.mkdir(parents=True)
        manifest = BackupManifest(tool=self.tool, created_at=now.isoformat())
        manifest.save(directory)
        logger.info("Backup directory: %s", directory)
        return BackupHandle(self, directory, manifest, previous)

    # =========================================================================
    # Restore
    # =========================================================================

    def restore_or_remove(self, host_path: str, restore_dir: Optional[Path],
                          dry_run: bool = False, remove: bool = True) -> CleanupEntry:
        """
        Restore a path from a backup, or remove it when no backup holds it.

        Args:
            host_path: Absolute host path of a generated file
            restore_dir: Backup directory, or None to just remove
            dry_run: Report the action without touching anything
            remove: False for files the host owns (GRUB), which are only
                ever restored, never deleted

        Returns:
            CleanupEntry describing the action
        """
        target = self.fs.path(host_path)
        created_by_run = False
        if restore_dir is not None:
            manifest = BackupManifest.load(restore_dir)
            record = manifest.records.get(host_path) if manifest else None
            created_by_run = record is not None and not record.existed

            source = restore_dir / "files" / host_path.lstrip("/")
            if not created_by_run and source.is_file():
                if not dry_run:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(source, target)
                logger.info("Restoring: %s", host_path)
                return CleanupEntry(host_path, RestoreAction.RESTORED, str(source))

        if remove and (target.exists() or target.is_symlink()):
            if not dry_run:
                target.unlink()
            logger.info("Removing: %s", host_path)
            return CleanupEntry(host_path, RestoreAction.REMOVED)
        return CleanupEntry(host_path, RestoreAction.ABSENT)

    def cleanup(self, paths: Iterable[str], restore_dir: Optional[Path] = None,
                dry_run: bool = False, restore_only: Iterable[str] = ()) -> List[CleanupEntry]:
        """
        Restore or remove every generated path.

        Uses the latest backup directory unless `restore_dir` is given.
        Running it twice leaves the same state as running it once.
        """
        if restore_dir is None:
            restore_dir = self.latest_backup_dir()
        if restore_dir is not None:
            logger.info("Restoring from backup: %s", restore_dir)
        else:
            logger.info("No backup found; removing generated files")

        keep = set(restore_only)
        entries = [self.restore_or_remove(p, restore_dir, dry_run, remove=p not in keep)
                   for p in paths]

        if restore_dir is not None and not dry_run:
            manifest = BackupManifest.load(restore_dir)
            if manifest is not None and manifest.restored_at is None:
                manifest.restored_at = self.clock().isoformat()
                manifest.save(restore_dir)
        return entries
