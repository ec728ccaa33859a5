"""Sync Scheduler.

Owns one cancellable asyncio task per account. Each task runs a pass on a
worker thread, then waits ``interval_seconds`` measured from the end of that
pass, until it is asked to stop. Passes for different accounts run in
parallel; the executor's run lock keeps passes for one account exclusive.

All control methods must be called from the thread running the scheduler's
event loop. Status reads are safe from any thread.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..audit import AuditEvent, AuditLogger
from ..config import SyncSettings
from ..errors import GlobalSyncDisabledError
from ..models import PassOutcome, PassResult
from ..storage.repository import AccountRepository
from ..sync.executor import SyncExecutor
from .job_state import GlobalStatus, JobState, JobStatus, validate_transition

logger = logging.getLogger(__name__)


class SyncJob:
    """A periodic loop driving the executor for one account."""

    def __init__(self, account_id: str, interval_seconds: int, executor: SyncExecutor) -> None:
        self.account_id = account_id
        self.interval_seconds = interval_seconds
        self._executor = executor
        self._state = JobState.STOPPED
        self._state_lock = threading.Lock()
        self._status = JobStatus(account_id=account_id, state=JobState.STOPPED, interval_seconds=interval_seconds)
        self._stop_event = asyncio.Event()
        self._cancel_event = threading.Event()
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def task(self) -> Optional["asyncio.Task[None]"]:
        return self._task

    def status(self) -> JobStatus:
        with self._state_lock:
            return self._status.model_copy(update={"state": self._state})

    def transition(self, new_state: JobState) -> None:
        with self._state_lock:
            validate_transition(self.account_id, self._state, new_state)
            self._state = new_state
        logger.debug("Job state changed", extra={"account_id": self.account_id, "state": new_state.value})

    def start(self, loop: asyncio.AbstractEventLoop, after: Optional["asyncio.Task[None]"] = None) -> None:
        """Schedule the loop; it stays ``stopped`` until ``after`` has finished."""
        pending = after is not None and not after.done()
        if not pending:
            self.transition(JobState.STARTING)
        self._status.started_at = datetime.utcnow()
        self._task = loop.create_task(self._run(after), name=f"mailsync-{self.account_id}")

    def request_stop(self) -> None:
        """Signal the loop; an in-flight pass stops at the next folder boundary."""
        self._stop_event.set()
        self._cancel_event.set()
        with self._state_lock:
            if self._state in (JobState.STOPPING, JobState.STOPPED):
                return
            validate_transition(self.account_id, self._state, JobState.STOPPING)
            self._state = JobState.STOPPING

    async def _run(self, after: Optional["asyncio.Task[None]"]) -> None:
        try:
            if after is not None and not after.done():
                # previous loop for this account must be gone first
                await asyncio.wait({after})
            if self._stop_event.is_set():
                return
            self.transition(JobState.STARTING)
            self.transition(JobState.IDLE)
            while not self._stop_event.is_set():
                if not self._enter(JobState.SYNCING):
                    break
                result = await self._run_pass()
                self._record(result)
                next_state = JobState.ERROR if result and result.outcome == PassOutcome.AUTH_FAILED else JobState.IDLE
                if not self._enter(next_state):
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            with self._state_lock:
                self._state = JobState.STOPPED
            logger.info("Sync job stopped", extra={"account_id": self.account_id})

    def _enter(self, state: JobState) -> bool:
        """Move to ``state`` unless a stop was requested meanwhile."""
        with self._state_lock:
            if self._state == JobState.STOPPING:
                return False
            validate_transition(self.account_id, self._state, state)
            self._state = state
            return True

    async def _run_pass(self) -> Optional[PassResult]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None,
                functools.partial(self._executor.run_pass, self.account_id, cancel_event=self._cancel_event),
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Sync pass crashed",
                exc_info=exc,
                extra={"account_id": self.account_id},
            )
            with self._state_lock:
                self._status.last_error = str(exc)
                self._status.last_outcome = PassOutcome.FAILED
            return None

    def _record(self, result: Optional[PassResult]) -> None:
        now = datetime.utcnow()
        with self._state_lock:
            self._status.last_run_at = now
            self._status.next_run_at = now + timedelta(seconds=self.interval_seconds)
            if result is None:
                return
            if result.outcome != PassOutcome.SKIPPED:
                self._status.passes += 1
            self._status.last_outcome = result.outcome
            self._status.last_error = result.error


class SyncScheduler:
    """Registry of per-account jobs with a global on/off switch."""

    def __init__(
        self,
        executor: SyncExecutor,
        accounts: AccountRepository,
        *,
        settings: Optional[SyncSettings] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self._executor = executor
        self._accounts = accounts
        self._settings = settings or SyncSettings()
        self._loop = loop
        self._audit = audit_logger
        self._jobs: Dict[str, SyncJob] = {}
        self._stopping: Dict[str, SyncJob] = {}
        self._registry_lock = threading.Lock()
        self._enabled = True

    # ------------------------------------------------------------------
    # Global switch
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable_global_sync(self) -> None:
        self._enabled = True
        logger.info("Global sync enabled")
        self._log_event("*", "enable_global")

    def disable_global_sync(self) -> None:
        """Reject new starts; running jobs keep running until stopped."""
        self._enabled = False
        logger.info("Global sync disabled")
        self._log_event("*", "disable_global")

    # ------------------------------------------------------------------
    # Per-account control
    # ------------------------------------------------------------------

    def start_sync_for_account(self, account_id: str, interval_seconds: Optional[int] = None) -> JobStatus:
        """Start the periodic job; a no-op returning the current status if it exists.

        The first pass is triggered immediately.

        Raises:
            GlobalSyncDisabledError: Global sync is disabled
            AccountNotFoundError: Unknown account
            ValueError: Interval below the configured minimum
        """
        if not self._enabled:
            raise GlobalSyncDisabledError(f"Global sync is disabled; cannot start {account_id}")

        with self._registry_lock:
            existing = self._jobs.get(account_id)
            if existing is not None:
                return existing.status()

        account = self._accounts.get_account(account_id)
        if interval_seconds is not None:
            interval = interval_seconds
        else:
            interval = account.sync_interval_seconds or self._settings.default_interval_seconds
        if interval < self._settings.min_interval_seconds:
            raise ValueError(
                f"interval_seconds must be >= {self._settings.min_interval_seconds}, got {interval}"
            )

        loop = self._get_loop()
        with self._registry_lock:
            existing = self._jobs.get(account_id)
            if existing is not None:
                return existing.status()
            previous = self._stopping.get(account_id)
            job = SyncJob(account_id, interval, self._executor)
            self._jobs[account_id] = job

        try:
            self._accounts.set_sync_enabled(account_id, True)
        except Exception:
            with self._registry_lock:
                if self._jobs.get(account_id) is job:
                    del self._jobs[account_id]
            raise
        job.start(loop, after=previous.task if previous else None)
        if job.task is not None:
            job.task.add_done_callback(functools.partial(self._forget_stopped, job))

        logger.info("Sync job started", extra={"account_id": account_id, "interval_seconds": interval})
        self._log_event(account_id, "start", {"interval_seconds": interval})
        return job.status()

    def stop_sync_for_account(self, account_id: str, *, persist: bool = True) -> bool:
        """Signal the job to stop; ``False`` when no job exists.

        With ``persist`` the account's ``sync_enabled`` flag is cleared so the
        job is not restarted on the next boot.
        """
        with self._registry_lock:
            job = self._jobs.pop(account_id, None)
            if job is None:
                return False
            self._stopping[account_id] = job

        job.request_stop()
        if persist:
            self._accounts.set_sync_enabled(account_id, False)
        logger.info("Sync job stopping", extra={"account_id": account_id})
        self._log_event(account_id, "stop")
        return True

    def restart_sync_for_account(self, account_id: str) -> JobStatus:
        """Stop then start; the new job reports ``stopped`` until the old loop has ended."""
        with self._registry_lock:
            current = self._jobs.get(account_id)
        interval = current.interval_seconds if current else None
        self.stop_sync_for_account(account_id, persist=False)
        return self.start_sync_for_account(account_id, interval)

    def start_all_active_configs(self) -> int:
        """Start every enabled account with sync enabled; no-op while disabled."""
        if not self._enabled:
            logger.info("Global sync disabled, not starting accounts")
            return 0
        started = 0
        for account in self._accounts.list_accounts():
            if not (account.enabled and account.sync_enabled):
                continue
            try:
                self.start_sync_for_account(account.id)
                started += 1
            except (ValueError, GlobalSyncDisabledError) as exc:
                logger.warning(
                    "Could not start sync job",
                    extra={"account_id": account.id, "error": str(exc)},
                )
        return started

    def stop_all_syncs(self) -> int:
        """Stop every job without touching the accounts' ``sync_enabled`` flags."""
        with self._registry_lock:
            account_ids = list(self._jobs)
        return sum(1 for account_id in account_ids if self.stop_sync_for_account(account_id, persist=False))

    async def sync_now(self, account_id: str) -> PassResult:
        """Run one pass immediately; ``SKIPPED`` when a pass is already in flight."""
        self._accounts.get_account(account_id)
        loop = asyncio.get_running_loop()
        self._log_event(account_id, "sync_now")
        return await loop.run_in_executor(None, self._executor.run_pass, account_id)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_sync_status(self, account_id: str) -> Optional[JobStatus]:
        with self._registry_lock:
            job = self._jobs.get(account_id) or self._stopping.get(account_id)
        return job.status() if job else None

    def get_active_jobs(self) -> List[JobStatus]:
        with self._registry_lock:
            jobs = list(self._jobs.values())
        return [job.status() for job in sorted(jobs, key=lambda j: j.account_id)]

    def get_global_status(self) -> GlobalStatus:
        jobs = self.get_active_jobs()
        return GlobalStatus(
            enabled=self._enabled,
            active_jobs=sum(1 for job in jobs if job.is_running),
            jobs=jobs,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_stopped(self, account_id: Optional[str] = None) -> None:
        """Wait until stopping jobs (all, or one account's) have ended."""
        with self._registry_lock:
            jobs = [
                job
                for key, job in self._stopping.items()
                if account_id is None or key == account_id
            ]
        tasks = [job.task for job in jobs if job.task is not None]
        if tasks:
            await asyncio.wait(tasks)

    async def shutdown(self) -> None:
        """Stop every job and wait for in-flight passes to finish."""
        self.stop_all_syncs()
        await self.wait_stopped()
        logger.info("Sync scheduler stopped")

    def _forget_stopped(self, job: SyncJob, _task: "asyncio.Task[None]") -> None:
        with self._registry_lock:
            if self._stopping.get(job.account_id) is job:
                del self._stopping[job.account_id]
            if self._jobs.get(job.account_id) is job:
                # loop ended without a stop request
                del self._jobs[job.account_id]

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _log_event(self, account_id: str, action: str, metadata: Optional[Dict[str, object]] = None) -> None:
        if not self._audit:
            return
        self._audit.try_record(
            AuditEvent(
                account_id=account_id,
                source="sync_scheduler",
                action=action,
                status="success",
                timestamp=datetime.utcnow(),
                metadata=metadata or {},
            )
        )


__all__ = ["SyncJob", "SyncScheduler"]
