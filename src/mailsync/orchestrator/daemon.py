"""Process lifecycle for the sync service.

Wires the store, adapter, executor, reconciler and scheduler from a
:class:`~mailsync.config.MailSyncConfig`, then runs until SIGINT/SIGTERM:

* on boot every enabled account with sync enabled is started;
* the global consistency sweep runs on the configured cron schedule;
* old monitor log entries are pruned every few hours;
* on shutdown every job is stopped and in-flight passes are awaited.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..audit import AuditLogger
from ..config import MailSyncConfig, SecretsManager
from ..imap.client import MailboxClient, RetryStrategy
from ..models import SweepSummary
from ..storage.sqlite_store import SqliteMailStore
from ..sync.executor import SyncExecutor
from ..sync.locks import RunLocks
from ..sync.monitor import SyncMonitor
from ..sync.reconciler import FolderReconciler
from .control import SyncControlService
from .scheduler import SyncScheduler

logger = logging.getLogger(__name__)

LOG_PRUNE_INTERVAL_HOURS = 6


@dataclass
class MailSyncRuntime:
    """All collaborators of a running service."""

    config: MailSyncConfig
    store: SqliteMailStore
    client: MailboxClient
    executor: SyncExecutor
    reconciler: FolderReconciler
    scheduler: SyncScheduler
    control: SyncControlService
    monitor: SyncMonitor
    audit_logger: Optional[AuditLogger] = None

    @classmethod
    def from_config(
        cls,
        config: MailSyncConfig,
        *,
        secrets: Optional[SecretsManager] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> "MailSyncRuntime":
        audit_logger = AuditLogger(config.audit.output_dir) if config.audit.enabled else None
        store = SqliteMailStore(config.storage.database_path, secrets=secrets)
        client = MailboxClient(
            store.resolve_secret,
            timeout=config.connection.timeout_seconds,
            retry_strategy=RetryStrategy(
                max_retries=config.connection.connect_retries,
                base_delay=config.connection.retry_base_delay,
                max_delay=config.connection.retry_max_delay,
            ),
        )
        run_locks = RunLocks()
        monitor = SyncMonitor()
        reconciler = FolderReconciler(
            store,
            store,
            client,
            run_locks=run_locks,
            max_resync_messages=config.sync.max_resync_messages,
            fetch_bodies=config.sync.fetch_bodies,
            audit_logger=audit_logger,
        )
        executor = SyncExecutor(
            store,
            store,
            client,
            settings=config.sync,
            run_locks=run_locks,
            reconciler=reconciler,
            monitor=monitor,
            audit_logger=audit_logger,
        )
        scheduler = SyncScheduler(
            executor, store, settings=config.sync, loop=loop, audit_logger=audit_logger
        )
        control = SyncControlService(
            scheduler, reconciler, store, store, client, run_locks=run_locks, audit_logger=audit_logger
        )
        return cls(
            config=config,
            store=store,
            client=client,
            executor=executor,
            reconciler=reconciler,
            scheduler=scheduler,
            control=control,
            monitor=monitor,
            audit_logger=audit_logger,
        )

    def close(self) -> None:
        self.store.close()


class MailSyncDaemon:
    """Runs the scheduler until a shutdown signal arrives."""

    def __init__(self, runtime: MailSyncRuntime) -> None:
        self.runtime = runtime
        self._shutdown_event = asyncio.Event()
        self._cron: Optional[AsyncIOScheduler] = None

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # not available on this platform or outside the main thread
                logger.debug("Signal handler not installed", extra={"signal": sig.name})

        self._start_cron(loop)
        started = self.runtime.scheduler.start_all_active_configs()
        logger.info("Sync daemon started", extra={"jobs_started": started})

        try:
            await self._shutdown_event.wait()
        finally:
            await self.shutdown()
            for sig in installed:
                loop.remove_signal_handler(sig)

    async def shutdown(self) -> None:
        if self._cron is not None:
            self._cron.shutdown(wait=False)
            self._cron = None
        await self.runtime.scheduler.shutdown()
        logger.info("Sync daemon stopped")

    def _start_cron(self, loop: asyncio.AbstractEventLoop) -> None:
        self._cron = AsyncIOScheduler(event_loop=loop)
        sweep = self.runtime.config.sweep
        if sweep.enabled:
            self._cron.add_job(
                self._run_sweep,
                trigger=CronTrigger.from_crontab(sweep.cron),
                id="consistency-sweep",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self._cron.add_job(
            self._prune_logs,
            trigger=IntervalTrigger(hours=LOG_PRUNE_INTERVAL_HOURS),
            id="prune-sync-logs",
            replace_existing=True,
        )
        self._cron.start()

    async def _run_sweep(self) -> SweepSummary:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.runtime.control.run_global_consistency_sweep)

    def _prune_logs(self) -> None:
        self.runtime.monitor.clear_old_logs(24)


__all__ = ["MailSyncDaemon", "MailSyncRuntime"]
