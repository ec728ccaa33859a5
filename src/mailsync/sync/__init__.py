"""Sync Executor, Folder Consistency Reconciler and their helpers."""

from .executor import SyncExecutor
from .locks import RunLocks
from .monitor import SyncMonitor
from .reconciler import FolderReconciler, run_consistency_sweep

__all__ = ["FolderReconciler", "RunLocks", "SyncExecutor", "SyncMonitor", "run_consistency_sweep"]
