"""
Tests for CallSession.

Referências:
- callcontrol/core/call_session.py
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from callcontrol.core.call_session import (
    CallSession,
    create_call_session,
    invoke_capability,
)
from callcontrol.core.errors import (
    ConflictError,
    NotImplementedCapability,
    OperationFailureError,
    PreconditionError,
)
from callcontrol.core.events import CallErrorEvent, CallEventType
from callcontrol.core.types import CallDirection, CallState, TerminationCause

from tests.conftest import FakeTransport


def collect(bus, event):
    received = []
    bus.on(event, received.append)
    return received


class TestCallSessionCreation:
    """Testes de criação e validação."""

    def test_invalid_remote_uri(self, event_bus, transport):
        with pytest.raises(ValueError, match="Invalid SIP URI format for remote_uri"):
            CallSession(
                call_id="call-1",
                direction=CallDirection.OUTGOING,
                local_uri="sip:alice@example.com",
                remote_uri="bob",
                transport=transport,
                event_bus=event_bus,
            )

    def test_create_incoming_starts_ringing(self, event_bus, transport):
        session = create_call_session(
            transport, CallDirection.INCOMING, "sip:alice@example.com", event_bus
        )

        assert session.id == "call-1"
        assert session.state == CallState.RINGING
        assert session.remote_uri == "sip:bob@example.com"

    def test_create_outgoing_starts_calling(self, event_bus, transport):
        session = create_call_session(
            transport,
            CallDirection.OUTGOING,
            "sip:alice@example.com",
            event_bus,
            remote_uri="sip:carol@example.com",
        )

        assert session.state == CallState.CALLING
        assert session.remote_uri == "sip:carol@example.com"

    def test_binds_transport_events(self, make_session, transport):
        """Sessão assina os eventos nativos quando o transporte expõe on()."""
        make_session(transport)

        assert {"confirmed", "ended", "failed", "hold"} <= set(transport.handlers)

    def test_to_dict_snapshot(self, make_session):
        snapshot = make_session().to_dict()

        assert snapshot["id"] == "call-1"
        assert snapshot["state"] == "active"
        assert snapshot["is_on_hold"] is False
        assert snapshot["termination_cause"] is None


class TestCallSessionCapabilities:
    """Testes de checagem de capacidade do transporte."""

    @pytest.mark.asyncio
    async def test_missing_capability_raises(self, make_session, event_bus):
        """Transporte sem hold() -> NotImplementedCapability, sem mudar estado."""
        transport = MagicMock(spec=["id", "terminate"])
        session = make_session(transport)
        errors = collect(event_bus, CallEventType.ERROR)

        with pytest.raises(NotImplementedCapability, match=r"CallSession\.hold\(\) is not implemented"):
            await session.hold()

        assert session.state == CallState.ACTIVE
        assert len(errors) == 1
        assert isinstance(errors[0], CallErrorEvent)
        assert errors[0].operation == "hold"
        assert errors[0].error_type == "NotImplementedCapability"

    def test_missing_capability_is_not_implemented_error(self, make_session):
        session = make_session(MagicMock(spec=[]))

        with pytest.raises(NotImplementedError):
            session.mute()

    def test_has_capability(self, make_session):
        session = make_session(MagicMock(spec=["hold"]))

        assert session.has_capability("hold")
        assert not session.has_capability("transfer")

    @pytest.mark.asyncio
    async def test_invoke_capability_wraps_transport_errors(self):
        """Erro nativo vira OperationFailureError preservando a mensagem."""
        target = MagicMock()
        target.transfer = AsyncMock(side_effect=RuntimeError("REFER rejected"))

        with pytest.raises(OperationFailureError, match="REFER rejected") as exc_info:
            await invoke_capability(target, "transfer", "sip:x@example.com")

        assert exc_info.value.operation == "transfer"

    @pytest.mark.asyncio
    async def test_invoke_capability_accepts_sync_methods(self):
        target = MagicMock()
        target.get_active_call = MagicMock(return_value="session")

        result = await invoke_capability(target, "get_active_call", "call-1", owner="SipClient")

        assert result == "session"


class TestCallSessionLifecycle:
    """Testes de answer/reject/terminate."""

    @pytest.mark.asyncio
    async def test_answer_incoming(self, make_session, transport):
        session = make_session(transport, state=CallState.RINGING, direction=CallDirection.INCOMING)

        await session.answer()

        assert session.state == CallState.ANSWERING
        assert transport.calls == [("answer", ({"extra_headers": []},))]

    @pytest.mark.asyncio
    async def test_answer_outgoing_rejected(self, make_session):
        session = make_session(state=CallState.RINGING)

        with pytest.raises(PreconditionError, match="Cannot answer outgoing call"):
            await session.answer()

    @pytest.mark.asyncio
    async def test_reject_invalid_status(self, make_session):
        session = make_session(state=CallState.RINGING, direction=CallDirection.INCOMING)

        with pytest.raises(ValueError, match="Invalid rejection status code"):
            await session.reject(200)

    @pytest.mark.asyncio
    async def test_reject_busy(self, make_session, transport, event_bus):
        session = make_session(transport, state=CallState.RINGING, direction=CallDirection.INCOMING)
        ended = collect(event_bus, CallEventType.ENDED)

        await session.reject(486)

        assert transport.calls == [("reject", (486, "Busy Here"))]
        assert session.state == CallState.TERMINATED
        assert session.termination_cause == TerminationCause.REJECTED
        assert len(ended) == 1

    @pytest.mark.asyncio
    async def test_terminate(self, make_session, transport, event_bus):
        session = make_session(transport)
        ended = collect(event_bus, CallEventType.ENDED)

        await session.terminate()

        assert session.state == CallState.TERMINATED
        assert session.termination_cause == TerminationCause.BYE
        assert transport.listeners_removed
        assert ended[0].data["originator"] == "local"

    @pytest.mark.asyncio
    async def test_terminate_twice_is_noop(self, make_session, transport):
        session = make_session(transport)

        await session.terminate()
        await session.hangup()

        assert transport.names() == ["terminate"]

    @pytest.mark.asyncio
    async def test_terminate_failure_still_terminates(self, make_session, transport):
        """Falha do transporte é relançada, mas a sessão termina mesmo assim."""
        transport.fail["terminate"] = RuntimeError("socket closed")
        session = make_session(transport)

        with pytest.raises(OperationFailureError, match="socket closed"):
            await session.terminate()

        assert session.state == CallState.TERMINATED

    @pytest.mark.asyncio
    async def test_destroy_terminates_in_background(self, make_session, transport):
        session = make_session(transport)

        session.destroy()
        await asyncio.sleep(0)

        assert "terminate" in transport.names()
        assert transport.listeners_removed


class TestCallSessionControls:
    """Testes de hold/mute/DTMF/transfer."""

    @pytest.mark.asyncio
    async def test_hold_and_unhold(self, make_session, transport, event_bus):
        session = make_session(transport)
        changes = collect(event_bus, CallEventType.STATE_CHANGED)

        await session.hold()
        assert session.is_on_hold
        assert session.state == CallState.HELD

        await session.unhold()
        assert not session.is_on_hold
        assert session.state == CallState.ACTIVE

        assert [c.data["current_state"] for c in changes] == ["held", "active"]

    @pytest.mark.asyncio
    async def test_hold_when_already_held_is_noop(self, make_session, transport):
        session = make_session(transport)

        await session.hold()
        await session.hold()

        assert transport.names() == ["hold"]

    @pytest.mark.asyncio
    async def test_hold_requires_active(self, make_session):
        session = make_session(state=CallState.RINGING)

        with pytest.raises(PreconditionError, match="Cannot hold call in state: ringing"):
            await session.hold()

    @pytest.mark.asyncio
    async def test_concurrent_hold_conflicts(self, make_session):
        transport = FakeTransport()
        release = asyncio.Event()

        async def slow_hold():
            await release.wait()

        transport.hold = slow_hold
        session = make_session(transport)

        first = asyncio.create_task(session.hold())
        await asyncio.sleep(0)

        with pytest.raises(ConflictError):
            await session.hold()

        release.set()
        await first
        assert session.is_on_hold

    @pytest.mark.asyncio
    async def test_hold_timeout(self, event_bus, settings, metrics):
        transport = FakeTransport()

        async def never():
            await asyncio.Event().wait()

        transport.hold = never
        session = CallSession(
            call_id="call-1",
            direction=CallDirection.OUTGOING,
            local_uri="sip:alice@example.com",
            remote_uri="sip:bob@example.com",
            transport=transport,
            event_bus=event_bus,
            initial_state=CallState.ACTIVE,
            settings=settings.model_copy(update={"hold_timeout": 0.01}),
            metrics=metrics,
        )

        with pytest.raises(OperationFailureError, match="timed out"):
            await session.hold()

        assert not session.is_on_hold
        assert session.state == CallState.ACTIVE

    def test_mute_and_unmute(self, make_session, transport, event_bus):
        session = make_session(transport)
        muted = collect(event_bus, CallEventType.MUTED)

        session.mute()
        session.mute()
        assert session.is_muted

        session.unmute()
        assert not session.is_muted
        assert transport.names() == ["mute", "unmute"]
        assert len(muted) == 1

    @pytest.mark.asyncio
    async def test_send_dtmf_sequence(self, make_session, transport, event_bus):
        session = make_session(transport)
        sent = collect(event_bus, CallEventType.DTMF_SENT)

        await session.send_dtmf("12#", transport_type="INFO")

        assert [args[0] for name, args in transport.calls] == ["1", "2", "#"]
        assert transport.calls[0][1][1] == {"duration": 100, "transport_type": "INFO"}
        assert [e.data["tone"] for e in sent] == ["1", "2", "#"]

    @pytest.mark.asyncio
    async def test_send_dtmf_invalid_tone(self, make_session, transport):
        session = make_session(transport)

        with pytest.raises(ValueError, match="Invalid DTMF tone"):
            await session.send_dtmf("12x")

        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_dtmf_is_serialized(self, make_session, transport):
        session = make_session(transport)

        await asyncio.gather(session.send_dtmf("12"), session.send_dtmf("34"))

        tones = "".join(args[0] for name, args in transport.calls)
        assert tones == "1234"

    @pytest.mark.asyncio
    async def test_blind_transfer_passes_headers(self, make_session, transport, event_bus):
        session = make_session(transport)
        initiated = collect(event_bus, CallEventType.TRANSFER_INITIATED)

        await session.transfer("sip:carol@example.com", ["Diversion: <sip:forwarded>"])

        assert transport.calls == [
            ("transfer", ("sip:carol@example.com", ["Diversion: <sip:forwarded>"]))
        ]
        assert initiated[0].data["transfer_type"] == "blind"

    @pytest.mark.asyncio
    async def test_attended_transfer_allowed_while_held(self, make_session, transport):
        session = make_session(transport, state=CallState.HELD)

        await session.attended_transfer("sip:carol@example.com", "call-2")

        assert transport.calls == [("attended_transfer", ("sip:carol@example.com", "call-2"))]

    @pytest.mark.asyncio
    async def test_operation_metrics(self, make_session, transport, metrics):
        session = make_session(transport)
        await session.hold()

        assert metrics.get_sample(
            "callcontrol_call_operations_total", operation="hold", outcome="success"
        ) == 1.0


class TestCallSessionTransportEvents:
    """Testes de tradução de eventos do transporte."""

    def test_confirmed_sets_active(self, make_session, transport, event_bus):
        session = make_session(transport, state=CallState.CALLING)
        confirmed = collect(event_bus, CallEventType.CONFIRMED)

        transport.fire("confirmed")

        assert session.state == CallState.ACTIVE
        assert session.timing.answer_time is not None
        assert len(confirmed) == 1

    def test_progress_ringing_and_early_media(self, make_session, transport):
        session = make_session(transport, state=CallState.CALLING)

        transport.fire("progress", {"status_code": 180})
        assert session.state == CallState.RINGING

        transport.fire("progress", {"status_code": 183})
        assert session.state == CallState.EARLY_MEDIA

    def test_ended_maps_cause(self, make_session, transport, event_bus):
        session = make_session(transport)
        ended = collect(event_bus, CallEventType.ENDED)

        transport.fire("ended", {"cause": "Busy", "originator": "remote"})

        assert session.state == CallState.TERMINATED
        assert session.termination_cause == TerminationCause.BUSY
        assert ended[0].data == {"cause": "busy", "originator": "remote"}

    def test_unknown_cause_maps_to_other(self, make_session, transport):
        session = make_session(transport)

        transport.fire("failed", {"cause": "Something New"})

        assert session.state == CallState.FAILED
        assert session.termination_cause == TerminationCause.OTHER

    def test_terminal_state_is_final(self, make_session, transport):
        """Eventos após estado terminal não reabrem a sessão."""
        session = make_session(transport)

        transport.fire("ended", {"cause": "BYE"})
        transport.fire("confirmed")
        transport.fire("failed", {"cause": "Busy"})

        assert session.state == CallState.TERMINATED
        assert session.termination_cause == TerminationCause.BYE

    def test_remote_hold(self, make_session, transport, event_bus):
        session = make_session(transport)
        holds = collect(event_bus, CallEventType.HOLD)

        transport.fire("hold", {"originator": "remote"})

        assert session.state == CallState.REMOTE_HELD
        assert not session.is_on_hold
        assert holds[0].data["originator"] == "remote"

        transport.fire("unhold", {"originator": "remote"})
        assert session.state == CallState.ACTIVE

    def test_unknown_event_ignored(self, make_session):
        session = make_session()

        session.handle_transport_event("reinvite", {})

        assert session.state == CallState.ACTIVE

    @pytest.mark.asyncio
    async def test_remote_unhold_keeps_local_hold(self, make_session, transport, event_bus):
        """Unhold remoto com hold local ativo não volta para ACTIVE."""
        session = make_session(transport)
        await session.hold()
        unholds = collect(event_bus, CallEventType.UNHOLD)

        transport.fire("unhold", {"originator": "remote"})

        assert session.state == CallState.HELD
        assert session.is_on_hold
        assert unholds[0].data["originator"] == "remote"
