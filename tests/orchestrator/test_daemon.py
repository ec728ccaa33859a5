"""Tests for runtime wiring and the daemon lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from mailsync.config import (
    AuditSettings,
    MailSyncConfig,
    SecretsManager,
    StorageSettings,
    SweepSettings,
)
from mailsync.errors import NetworkError
from mailsync.orchestrator.daemon import MailSyncDaemon, MailSyncRuntime


@pytest.fixture
def config(tmp_path) -> MailSyncConfig:
    return MailSyncConfig(
        storage=StorageSettings(database_path=tmp_path / "data" / "mailsync.db"),
        audit=AuditSettings(output_dir=tmp_path / "audit"),
        sweep=SweepSettings(cron="*/5 * * * *"),
    )


@pytest.fixture
def runtime(config):
    rt = MailSyncRuntime.from_config(config, secrets=SecretsManager())
    yield rt
    rt.close()


def test_runtime_shares_collaborators(runtime, config):
    assert runtime.executor.reconciler is runtime.reconciler
    assert runtime.executor.run_locks is runtime.reconciler.run_locks
    assert runtime.control.run_locks is runtime.reconciler.run_locks
    assert runtime.executor.monitor is runtime.monitor
    assert runtime.audit_logger is not None
    assert runtime.audit_logger.path.parent == config.audit.output_dir
    assert config.storage.database_path.exists()


def test_audit_can_be_disabled(tmp_path):
    config = MailSyncConfig(
        storage=StorageSettings(database_path=tmp_path / "mailsync.db"),
        audit=AuditSettings(enabled=False, output_dir=tmp_path / "audit"),
    )
    runtime = MailSyncRuntime.from_config(config)
    try:
        assert runtime.audit_logger is None
        assert not (tmp_path / "audit").exists()
    finally:
        runtime.close()


@pytest.mark.asyncio
async def test_daemon_runs_until_shutdown(runtime):
    daemon = MailSyncDaemon(runtime)
    task = asyncio.create_task(daemon.run())
    await asyncio.sleep(0.05)

    assert not task.done()
    daemon.request_shutdown()
    await asyncio.wait_for(task, timeout=5)

    assert runtime.scheduler.get_active_jobs() == []


def _offline(account):
    raise NetworkError(f"{account.host}: offline")


@pytest.mark.asyncio
async def test_daemon_starts_enabled_accounts(runtime, make_account):
    account = make_account("daemon-acct", sync_enabled=False)
    runtime.store.save_account(account)
    runtime.store.save_account(make_account("other"))
    runtime.client.connect = _offline

    daemon = MailSyncDaemon(runtime)
    task = asyncio.create_task(daemon.run())
    try:
        for _ in range(100):
            if runtime.scheduler.get_active_jobs():
                break
            await asyncio.sleep(0.01)
        assert [job.account_id for job in runtime.scheduler.get_active_jobs()] == ["other"]
    finally:
        daemon.request_shutdown()
        await asyncio.wait_for(task, timeout=5)
