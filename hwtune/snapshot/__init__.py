"""
Backup/restore for generated files.

- Timestamped backup directory per apply run, with a JSON manifest
- Originals carried forward across repeated applies
- Cleanup restores from the latest (or a chosen) backup, or removes
- Run lock shared by apply and cleanup
"""

from .models import BackupManifest, BackupRecord, CleanupEntry, RestoreAction
from .manager import BackupHandle, BackupManager
from .lock import RunLock

__all__ = [
    'BackupManifest',
    'BackupRecord',
    'CleanupEntry',
    'RestoreAction',
    'BackupHandle',
    'BackupManager',
    'RunLock',
]
