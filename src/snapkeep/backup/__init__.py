"""
Backup and restore functionality for snapkeep.

Usage:
    from snapkeep.backup import BackupManager
    from snapkeep.config import load_config

    manager = BackupManager(load_config())

    # Create a backup
    result = manager.create_backup("nightly")

    # Verify backup integrity
    verification = manager.verify_backup(result.path)

    # Restore from backup
    restored = manager.restore_backup(result.path)

    # Back up rows changed in the last six hours
    manager.create_incremental_backup(since)

    # Apply the retention policy
    deleted = manager.cleanup_expired_backups()
"""

from snapkeep.backup.incremental import IncrementalEngine
from snapkeep.backup.manager import BackupManager
from snapkeep.backup.restore import RestoreEngine
from snapkeep.backup.retention import RetentionManager
from snapkeep.backup.verifier import BackupVerifier
from snapkeep.backup.writer import BackupWriter

__all__ = [
    "BackupManager",
    "BackupWriter",
    "BackupVerifier",
    "RestoreEngine",
    "IncrementalEngine",
    "RetentionManager",
]
