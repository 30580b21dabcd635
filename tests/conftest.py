"""Fixtures compartilhadas dos testes do controle de chamadas."""

from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from callcontrol.config import CallControlSettings, reset_settings
from callcontrol.core.call_session import CallSession
from callcontrol.core.event_bus import EventBus
from callcontrol.core.types import CallDirection, CallState
from callcontrol.utils.metrics import CallControlMetrics, reset_metrics


class FakeTransport:
    """Transporte SIP em memória: registra chamadas e permite injetar falhas."""

    def __init__(self, call_id: str = "call-1", remote_uri: str = "sip:bob@example.com"):
        self.id = call_id
        self.remote_uri = remote_uri
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.handlers: Dict[str, Callable[..., Any]] = {}
        self.fail: Dict[str, Exception] = {}
        self.listeners_removed = False

    def on(self, name: str, handler: Callable[..., Any]) -> None:
        self.handlers[name] = handler

    def fire(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self.handlers[name](payload or {})

    def remove_all_listeners(self) -> None:
        self.listeners_removed = True

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    async def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.fail:
            raise self.fail[name]

    async def answer(self, options):
        await self._record("answer", options)

    async def reject(self, status_code, reason_phrase):
        await self._record("reject", status_code, reason_phrase)

    async def terminate(self):
        await self._record("terminate")

    async def hold(self):
        await self._record("hold")

    async def unhold(self):
        await self._record("unhold")

    def mute(self):
        self.calls.append(("mute", ()))

    def unmute(self):
        self.calls.append(("unmute", ()))

    async def send_dtmf(self, tone, options):
        await self._record("send_dtmf", tone, options)

    async def transfer(self, target, extra_headers=None):
        await self._record("transfer", target, extra_headers)

    async def attended_transfer(self, target, consultation_call_id):
        await self._record("attended_transfer", target, consultation_call_id)


@pytest.fixture(autouse=True)
def reset_globals():
    """Isola configuração e métricas globais entre testes."""
    reset_settings()
    reset_metrics()
    yield
    reset_settings()
    reset_metrics()


@pytest.fixture
def settings():
    """Configuração com atrasos curtos."""
    return CallControlSettings(
        transfer_completion_delay=0.05,
        transfer_cancellation_delay=0.02,
        hold_timeout=1.0,
        dtmf_inter_tone_gap_ms=0,
    )


@pytest.fixture
def metrics():
    return CallControlMetrics()


@pytest.fixture
def event_bus():
    bus = EventBus(name="test")
    yield bus
    bus.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_session(event_bus, settings, metrics):
    """Factory de CallSession (por padrão saída e ACTIVE)."""

    def _make(
        transport: Any = None,
        call_id: str = "call-1",
        state: CallState = CallState.ACTIVE,
        direction: CallDirection = CallDirection.OUTGOING,
    ) -> CallSession:
        return CallSession(
            call_id=call_id,
            direction=direction,
            local_uri="sip:alice@example.com",
            remote_uri="sip:bob@example.com",
            transport=transport if transport is not None else FakeTransport(call_id),
            event_bus=event_bus,
            initial_state=state,
            settings=settings,
            metrics=metrics,
        )

    return _make
