"""
Tests for TimeoutManager.

Referências:
- callcontrol/core/timeout_manager.py
"""

import asyncio

import pytest

from callcontrol.core.timeout_manager import TimeoutManager


class TestTimeoutManager:
    """Testes de agendamento nomeado."""

    @pytest.mark.asyncio
    async def test_callback_fires(self):
        manager = TimeoutManager(owner="test")
        fired = []

        manager.schedule("clear", 0.01, lambda: fired.append(True))
        assert manager.is_scheduled("clear")

        await asyncio.sleep(0.05)

        assert fired == [True]
        assert not manager.is_scheduled("clear")

    @pytest.mark.asyncio
    async def test_async_callback(self):
        manager = TimeoutManager()
        fired = []

        async def callback():
            fired.append("async")

        manager.schedule("clear", 0.01, callback)
        await asyncio.sleep(0.05)

        assert fired == ["async"]

    @pytest.mark.asyncio
    async def test_cancel_prevents_callback(self):
        manager = TimeoutManager()
        fired = []

        manager.schedule("clear", 0.01, lambda: fired.append(True))
        assert manager.cancel("clear") is True
        assert manager.cancel("clear") is False

        await asyncio.sleep(0.05)
        assert fired == []

    @pytest.mark.asyncio
    async def test_reschedule_replaces_previous(self):
        """Mesmo nome substitui agendamento anterior."""
        manager = TimeoutManager()
        fired = []

        manager.schedule("clear", 0.01, lambda: fired.append("first"))
        manager.schedule("clear", 0.02, lambda: fired.append("second"))

        await asyncio.sleep(0.06)
        assert fired == ["second"]

    @pytest.mark.asyncio
    async def test_callback_error_is_logged(self):
        manager = TimeoutManager()

        def broken():
            raise RuntimeError("boom")

        manager.schedule("broken", 0.01, broken)
        await asyncio.sleep(0.05)

        assert not manager.is_scheduled("broken")

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        manager = TimeoutManager()
        manager.schedule("a", 1, lambda: None)
        manager.schedule("b", 1, lambda: None)

        active = manager.get_active_timeouts()
        assert {t["name"] for t in active} == {"a", "b"}

        assert manager.cancel_all() == 2
        assert manager.get_active_timeouts() == []
