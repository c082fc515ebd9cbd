"""
Service runner tests
Startup wiring and graceful shutdown of the whole job service
"""

import asyncio

from conftest import FakePaymentGateway, RecordingNotifier
from config import Config
from escrow_job_service import EscrowJobServiceRunner
from jobs.background_job_manager import ManagerState
from services.escrow_store import InMemoryEscrowStore, SqlAlchemyEscrowStore


async def wait_until_running(runner, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while runner.manager is None or runner.manager.state != ManagerState.RUNNING:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("service did not start in time")
        await asyncio.sleep(0.01)


class TestRunner:
    async def test_in_memory_start_and_stop(self, monkeypatch):
        monkeypatch.setattr(Config, "DATABASE_URL", None)
        runner = EscrowJobServiceRunner(FakePaymentGateway(), notifier=RecordingNotifier())

        task = asyncio.create_task(runner.run_until_stopped(install_signal_handlers=False))
        await wait_until_running(runner)

        assert isinstance(runner.store, InMemoryEscrowStore)
        assert runner.admin.trigger("auto-release")["success"] is True
        assert runner.admin.health()["total_jobs"] == 3

        runner.request_stop()
        await asyncio.wait_for(task, timeout=2.0)

        assert runner.manager.state == ManagerState.STOPPED

    async def test_sql_store_when_database_url_is_set(self, monkeypatch, tmp_path):
        monkeypatch.setattr(Config, "DATABASE_URL", f"sqlite:///{tmp_path / 'jobs.db'}")
        runner = EscrowJobServiceRunner(FakePaymentGateway(), notifier=RecordingNotifier())

        await runner.start()
        try:
            assert isinstance(runner.store, SqlAlchemyEscrowStore)
            assert runner.engine is not None
        finally:
            await runner.stop()

        assert runner.engine is None

    async def test_stop_without_start(self):
        runner = EscrowJobServiceRunner(FakePaymentGateway())
        await runner.stop()
        runner.request_stop()
