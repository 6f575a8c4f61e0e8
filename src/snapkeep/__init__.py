"""
snapkeep - backups you can verify, restore and forget about

snapkeep snapshots the entity collections of an application's data store into
single backup files, restores them all-or-nothing, writes incremental backups
of recently changed rows and keeps the backup directory within its retention
period.

Key Features:
    - Canonical JSON snapshots with SHA-256 checksums
    - Optional gzip compression and Fernet encryption (pluggable codecs)
    - Atomic writes: a backup file is complete or absent
    - Transactional restore with rollback on any constraint violation
    - Incremental backups of rows changed since a checkpoint
    - Retention cleanup and a built-in scheduler
    - Optional off-site copies in S3
"""

__version__ = "0.1.0"

from snapkeep.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
