"""
Unit tests for the batch job entry point: client boot checks and signal cancellation.
"""

import asyncio
import functools
import signal

from fakes import make_store_data
from services.chat_vector_sync.chat_vector_sync import do_boot_clients, install_cancel_handlers


class RecordingLoop:
    """Stands in for the event loop and keeps the registered signal handlers."""

    def __init__(self, supported: bool = True):
        self.supported = supported
        self.handlers: dict = {}

    def add_signal_handler(self, sig, callback, *args):
        if not self.supported:
            raise NotImplementedError
        self.handlers[sig] = functools.partial(callback, *args)


def boot_against_fake(monkeypatch, stack):
    client = stack.store_client
    monkeypatch.setattr(client, "boot", functools.partial(type(client).boot, client, transport=stack.firebase.transport()))
    return client


class TestBootClients:
    """Tests for do_boot_clients."""

    def test_healthy_backend_boots(self, stack, monkeypatch, helper_config):
        stack.firebase.data = make_store_data(users={"u1": {"displayName": "Alice"}})
        client = boot_against_fake(monkeypatch, stack)

        async def scenario():
            try:
                return await do_boot_clients([client], helper_config.get_logger())
            finally:
                await client.close()

        assert asyncio.run(scenario()) is True

    def test_failed_health_check_aborts(self, stack, monkeypatch, helper_config, caplog):
        stack.firebase.fail_paths[""] = 500
        client = boot_against_fake(monkeypatch, stack)

        async def scenario():
            try:
                return await do_boot_clients([client], helper_config.get_logger())
            finally:
                await client.close()

        assert asyncio.run(scenario()) is False
        assert "status 500" in caplog.text


class TestCancelHandlers:
    """Tests for install_cancel_handlers."""

    def test_signals_cancel_the_running_job(self, stack, helper_config):
        stack.firebase.data = make_store_data(
            workspaces={"ws1": {"channels": {"c1": {"messages": {
                "m1": {"userId": "u1", "content": "I love hiking", "timestamp": 100},
            }}}}},
            users={"u1": {"displayName": "Alice", "bio": "Trail runner", "workspaces": {"ws1": True}}},
        )
        loop = RecordingLoop()
        install_cancel_handlers(loop, stack.migration_service, helper_config.get_logger())
        assert set(loop.handlers) == {signal.SIGINT, signal.SIGTERM}

        async def scenario():
            await stack.boot()
            try:
                job = asyncio.create_task(stack.migration_service.do_full_reindex())
                await asyncio.sleep(0)
                assert loop.handlers[signal.SIGTERM]() is True
                return await job
            finally:
                await stack.close()

        result = asyncio.run(scenario())

        assert result.cancelled
        assert stack.pinecone.count("user-u1") == 0

    def test_signal_without_job_is_harmless(self, stack, helper_config):
        loop = RecordingLoop()
        install_cancel_handlers(loop, stack.migration_service, helper_config.get_logger())

        assert loop.handlers[signal.SIGINT]() is False

    def test_unsupported_platform_only_warns(self, stack, helper_config, caplog):
        loop = RecordingLoop(supported=False)

        install_cancel_handlers(loop, stack.migration_service, helper_config.get_logger())

        assert loop.handlers == {}
        assert "Cannot handle SIGINT" in caplog.text
