"""
Backup module for s3backup.

This module handles the core backup functionality including:
- Directory scanning and object key mapping
- Storage (S3 and local)
- Single-shot and multipart transfers
- Bounded concurrent execution with fail-fast cancellation
- Retention policy enforcement
- Database dumps
"""

from .executor import BackupExecutor, UploadPipeline, run_upload, run_retention
from .orchestrator import CancellationToken, ConcurrencyOrchestrator, RunCounters
from .retention import RetentionManager, KeepCountPolicy, KeepAgePolicy, Grouping
from .scanner import PathMapper, scan_directory
from .storage import S3Storage, LocalStorage
from .transfer import TransferEngine

__all__ = [
    'BackupExecutor',
    'UploadPipeline',
    'run_upload',
    'run_retention',
    'CancellationToken',
    'ConcurrencyOrchestrator',
    'RunCounters',
    'RetentionManager',
    'KeepCountPolicy',
    'KeepAgePolicy',
    'Grouping',
    'PathMapper',
    'scan_directory',
    'S3Storage',
    'LocalStorage',
    'TransferEngine'
]
