"""
Data models for the backup/restore system.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Any
import json


MANIFEST_NAME = "manifest.json"


class RestoreAction(str, Enum):
    """What cleanup did (or would do) for one generated path."""
    RESTORED = "restored"       # Copied back from the backup
    REMOVED = "removed"         # No backup: generated file deleted
    ABSENT = "absent"           # Nothing to restore, nothing to remove


@dataclass
class BackupRecord:
    """State of one host path at the moment of the first mutation."""
    path: str                              # Absolute host path
    existed: bool                          # False: the run created the file
    sha256: str = ""                       # Hash of the original content
    inherited_from: Optional[str] = None   # Earlier backup dir holding the original

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        return cls(**data)


@dataclass
class BackupManifest:
    """Index of one timestamped backup directory."""
    tool: str
    created_at: str
    records: Dict[str, BackupRecord] = field(default_factory=dict)
    restored_at: Optional[str] = None      # Set once cleanup has used this backup

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool": self.tool,
            "created_at": self.created_at,
            "records": {p: r.to_dict() for p, r in self.records.items()},
            "restored_at": self.restored_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupManifest':
        return cls(
            tool=data["tool"],
            created_at=data["created_at"],
            records={p: BackupRecord.from_dict(r) for p, r in data.get("records", {}).items()},
            restored_at=data.get("restored_at"),
        )

    def save(self, backup_dir: Path) -> None:
        """Save manifest to JSON file."""
        with open(backup_dir / MANIFEST_NAME, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, backup_dir: Path) -> Optional['BackupManifest']:
        """Load a manifest; None for directories without one (or unreadable)."""
        path = backup_dir / MANIFEST_NAME
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return cls.from_dict(json.load(f))
        except (OSError, ValueError, KeyError):
            return None


@dataclass
class CleanupEntry:
    """One line of the cleanup summary."""
    path: str
    action: RestoreAction
    source: Optional[str] = None           # Backup file used for RESTORED
