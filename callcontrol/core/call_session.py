"""
CallSession - Fachada por chamada sobre o objeto de sessão do transporte.

Expõe operações com checagem de capacidade (hold, mute, DTMF, transfer,
terminate) e traduz eventos nativos do transporte em transições de estado,
republicadas no EventBus para que UI, TransferController e logging
convirjam no mesmo estado sem polling.

O transporte é qualquer objeto que implemente parte de TransportSession;
métodos podem ser sync ou async.
"""

import asyncio
import functools
import inspect
import logging
import re
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, runtime_checkable

from ..config import CallControlSettings, get_settings
from ..utils.metrics import CallControlMetrics, get_metrics
from .errors import (
    CallControlError,
    ConflictError,
    NotImplementedCapability,
    OperationFailureError,
    PreconditionError,
)
from .event_bus import EventBus
from .events import CallErrorEvent, CallEvent, CallEventType
from .types import (
    TERMINATION_CAUSE_MAP,
    CallDirection,
    CallState,
    CallTimingInfo,
    TerminationCause,
)

logger = logging.getLogger(__name__)

SIP_URI_PATTERN = re.compile(r"^sips?:[\w\-.!~*'()&=+$,;?/]+@[\w\-.]+")
DTMF_PATTERN = re.compile(r"^[0-9A-D*#]+$", re.IGNORECASE)

REASON_PHRASES = {
    404: "Not Found",
    406: "Not Acceptable",
    480: "Temporarily Unavailable",
    486: "Busy Here",
    603: "Decline",
}

# Eventos do transporte assinados automaticamente quando ele expõe on()
TRANSPORT_EVENTS = (
    "progress",
    "accepted",
    "confirmed",
    "ended",
    "failed",
    "hold",
    "unhold",
    "muted",
    "unmuted",
)


@runtime_checkable
class TransportSession(Protocol):
    """
    Superfície do objeto de sessão do transporte.

    Todos os membros são opcionais na prática: a ausência de um método
    resulta em NotImplementedCapability quando a operação é chamada.
    """

    id: str

    def hold(self) -> Any: ...
    def unhold(self) -> Any: ...
    def mute(self) -> Any: ...
    def unmute(self) -> Any: ...
    def send_dtmf(self, tone: str, options: Dict[str, Any]) -> Any: ...
    def transfer(self, target: str, extra_headers: Optional[List[str]] = None) -> Any: ...
    def attended_transfer(self, target: str, consultation_call_id: str) -> Any: ...
    def terminate(self) -> Any: ...


def require_capability(target: Any, capability: str, owner: str = "CallSession") -> Callable[..., Any]:
    """Checagem centralizada de capacidade: retorna o método ou levanta NotImplementedCapability."""
    method = getattr(target, capability, None)
    if not callable(method):
        raise NotImplementedCapability(capability, owner=owner)
    return method


async def invoke_capability(
    target: Any,
    capability: str,
    *args: Any,
    owner: str = "CallSession",
    **kwargs: Any,
) -> Any:
    """
    Invoca método (sync ou async) do colaborador.

    Erros fora da hierarquia CallControlError viram OperationFailureError
    preservando a mensagem original.
    """
    method = require_capability(target, capability, owner=owner)
    try:
        result = method(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
    except CallControlError:
        raise
    except Exception as e:
        raise OperationFailureError(str(e) or f"{capability} failed", operation=capability) from e
    return result


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CallSession:
    """
    Gerencia uma chamada individual.

    Funcionalidades:
    - Ciclo de vida (answer/reject/terminate)
    - Transições de estado validadas (estados terminais não saem)
    - Timing da chamada
    - Controles (hold, mute, DTMF, transferências)
    - Eventos "call:*" no EventBus, incluindo "call:error" para falhas

    Uso:
        session = CallSession("call-1", CallDirection.OUTGOING, local, remote, transport, bus)
        await session.hold()
        await session.terminate()
    """

    def __init__(
        self,
        call_id: str,
        direction: CallDirection,
        local_uri: str,
        remote_uri: str,
        transport: Any,
        event_bus: EventBus,
        remote_display_name: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        initial_state: CallState = CallState.IDLE,
        settings: Optional[CallControlSettings] = None,
        metrics: Optional[CallControlMetrics] = None,
    ):
        _validate_uri(local_uri, "local_uri")
        _validate_uri(remote_uri, "remote_uri")

        self._id = call_id
        self._direction = CallDirection(direction)
        self._local_uri = local_uri
        self._remote_uri = remote_uri
        self._remote_display_name = remote_display_name
        self._transport = transport
        self._events = event_bus
        self._data = dict(data or {})
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()

        self._state = CallState(initial_state)
        self._is_on_hold = False
        self._is_muted = False
        self._timing = CallTimingInfo(start_time=_now())
        self._termination_cause: Optional[TerminationCause] = None

        self._hold_pending = False
        self._dtmf_lock = asyncio.Lock()

        self._bind_transport()

        logger.debug(
            f"📞 [CALL_SESSION] Created: {self._id}",
            extra={
                "call_id": self._id,
                "direction": self._direction.value,
                "local_uri": self._local_uri,
                "remote_uri": self._remote_uri,
            }
        )

    # ========================================
    # PROPRIEDADES
    # ========================================

    @property
    def id(self) -> str:
        return self._id

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def direction(self) -> CallDirection:
        return self._direction

    @property
    def local_uri(self) -> str:
        return self._local_uri

    @property
    def remote_uri(self) -> str:
        return self._remote_uri

    @property
    def remote_display_name(self) -> Optional[str]:
        return self._remote_display_name

    @property
    def is_on_hold(self) -> bool:
        return self._is_on_hold

    @property
    def is_muted(self) -> bool:
        return self._is_muted

    @property
    def timing(self) -> CallTimingInfo:
        return CallTimingInfo(**asdict(self._timing))

    @property
    def termination_cause(self) -> Optional[TerminationCause]:
        return self._termination_cause

    @property
    def data(self) -> Dict[str, Any]:
        return dict(self._data)

    @property
    def transport(self) -> Any:
        return self._transport

    def has_capability(self, name: str) -> bool:
        return callable(getattr(self._transport, name, None))

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot da sessão (payload dos eventos)."""
        return {
            "id": self._id,
            "state": self._state.value,
            "direction": self._direction.value,
            "local_uri": self._local_uri,
            "remote_uri": self._remote_uri,
            "remote_display_name": self._remote_display_name,
            "is_on_hold": self._is_on_hold,
            "is_muted": self._is_muted,
            "timing": asdict(self._timing),
            "termination_cause": self._termination_cause.value if self._termination_cause else None,
            "data": dict(self._data),
        }

    # ========================================
    # INFRA: capacidade, invocação, eventos
    # ========================================

    def _require(self, capability: str) -> Callable[..., Any]:
        return require_capability(self._transport, capability)

    @contextmanager
    def _operation(self, name: str, capability: Optional[str] = None) -> Iterator[None]:
        """
        Envolve uma operação pública: checa capacidade, registra métrica
        e publica "call:error" em caso de falha (a exceção é relançada).
        """
        try:
            if capability:
                self._require(capability)
            yield
        except Exception as e:
            self._metrics.record_call_operation(name, success=False)
            logger.error(
                f"📞 [CALL_SESSION] {name} failed: {e}",
                extra={"call_id": self._id, "operation": name}
            )
            self._events.emit(CallEventType.ERROR, CallErrorEvent(
                call_id=self._id,
                operation=name,
                error=str(e),
                error_type=type(e).__name__,
                session=self.to_dict(),
            ))
            raise
        else:
            self._metrics.record_call_operation(name, success=True)

    async def _call_transport(self, capability: str, *args: Any, **kwargs: Any) -> Any:
        return await invoke_capability(self._transport, capability, *args, **kwargs)

    def _call_transport_sync(self, capability: str, *args: Any, **kwargs: Any) -> Any:
        method = self._require(capability)
        try:
            result = method(*args, **kwargs)
        except CallControlError:
            raise
        except Exception as e:
            raise OperationFailureError(str(e) or f"{capability} failed", operation=capability) from e

        if inspect.isawaitable(result):
            # Contrato síncrono: o round-trip de rede segue em background
            _spawn(result, self._id, capability)
        return result

    def _emit(self, event_type: CallEventType, **data: Any) -> None:
        self._events.emit(event_type, CallEvent(
            type=event_type,
            call_id=self._id,
            session=self.to_dict(),
            data=data,
        ))

    def _update_state(self, state: CallState) -> bool:
        if self._state == state:
            return False
        if self._state.is_terminal:
            logger.debug(
                f"Ignoring transition {self._state.value} -> {state.value} (terminal)",
                extra={"call_id": self._id}
            )
            return False

        previous = self._state
        self._state = state

        logger.info(
            f"📞 [CALL_SESSION] State: {previous.value} --> {state.value}",
            extra={"call_id": self._id}
        )
        self._emit(
            CallEventType.STATE_CHANGED,
            previous_state=previous.value,
            current_state=state.value,
        )
        return True

    def _require_state(self, action: str, *allowed: CallState) -> None:
        if self._state not in allowed:
            raise PreconditionError(f"Cannot {action} call in state: {self._state.value}")

    # ========================================
    # CICLO DE VIDA
    # ========================================

    async def answer(self, extra_headers: Optional[List[str]] = None) -> None:
        """Atende chamada de entrada em RINGING."""
        with self._operation("answer", capability="answer"):
            if self._direction != CallDirection.INCOMING:
                raise PreconditionError("Cannot answer outgoing call")
            self._require_state("answer", CallState.RINGING)

            logger.info(f"Answering call: {self._id}", extra={"call_id": self._id})
            self._update_state(CallState.ANSWERING)
            try:
                await self._call_transport("answer", {"extra_headers": extra_headers or []})
            except CallControlError:
                self._update_state(CallState.FAILED)
                raise

    async def reject(self, status_code: int = 603) -> None:
        """
        Rejeita chamada de entrada.

        Args:
            status_code: 486 Busy Here, 603 Decline, 480 Temporarily Unavailable...
        """
        with self._operation("reject", capability="reject"):
            if self._direction != CallDirection.INCOMING:
                raise PreconditionError("Cannot reject outgoing call")
            self._require_state("reject", CallState.RINGING)
            if not 400 <= status_code <= 699:
                raise ValueError(f"Invalid rejection status code: {status_code}. Must be 4xx-6xx")

            logger.info(
                f"Rejecting call: {self._id} with status {status_code}",
                extra={"call_id": self._id}
            )
            self._update_state(CallState.TERMINATING)
            await self._call_transport(
                "reject",
                status_code,
                REASON_PHRASES.get(status_code, "Rejected"),
            )
            self._finish(CallState.TERMINATED, TerminationCause.REJECTED, originator="local")

    async def terminate(self) -> None:
        """
        Encerra a chamada incondicionalmente.

        Sempre termina em TERMINATED, mesmo se o transporte falhar
        (a falha é relançada depois da transição).
        """
        with self._operation("terminate", capability="terminate"):
            if self._state.is_terminal:
                logger.warning(f"Call already terminated: {self._id}", extra={"call_id": self._id})
                return

            logger.info(f"Terminating call: {self._id}", extra={"call_id": self._id})
            self._update_state(CallState.TERMINATING)
            try:
                await self._call_transport("terminate")
            finally:
                self._finish(CallState.TERMINATED, TerminationCause.BYE, originator="local")

    async def hangup(self) -> None:
        await self.terminate()

    def destroy(self) -> None:
        """Encerra (se necessário) e libera listeners do transporte."""
        logger.info(f"Destroying call session: {self._id}", extra={"call_id": self._id})
        if not self._state.is_terminal and self.has_capability("terminate"):
            _spawn(self.terminate(), self._id, "destroy")
        self._cleanup()

    # ========================================
    # CONTROLES
    # ========================================

    async def hold(self) -> None:
        with self._operation("hold", capability="hold"):
            if self._is_on_hold:
                logger.warning("Call is already on hold", extra={"call_id": self._id})
                return
            self._require_state("hold", CallState.ACTIVE)
            if self._hold_pending:
                raise ConflictError("Hold/unhold operation already in progress")

            logger.info(f"Putting call on hold: {self._id}", extra={"call_id": self._id})
            await self._hold_round_trip("hold")

            self._is_on_hold = True
            self._update_state(CallState.HELD)
            self._emit(CallEventType.HOLD, originator="local")

    async def unhold(self) -> None:
        with self._operation("unhold", capability="unhold"):
            if not self._is_on_hold:
                logger.warning("Call is not on hold", extra={"call_id": self._id})
                return
            if self._hold_pending:
                raise ConflictError("Hold/unhold operation already in progress")

            logger.info(f"Resuming call from hold: {self._id}", extra={"call_id": self._id})
            await self._hold_round_trip("unhold")

            self._is_on_hold = False
            self._update_state(CallState.ACTIVE)
            self._emit(CallEventType.UNHOLD, originator="local")

    async def _hold_round_trip(self, capability: str) -> None:
        self._hold_pending = True
        timeout = self._settings.hold_timeout or None
        try:
            await asyncio.wait_for(self._call_transport(capability), timeout=timeout)
        except asyncio.TimeoutError:
            raise OperationFailureError(
                f"{capability.capitalize()} operation timed out after {timeout}s",
                operation=capability,
            ) from None
        finally:
            self._hold_pending = False

    def mute(self) -> None:
        """Muta o áudio local (efeito síncrono)."""
        with self._operation("mute", capability="mute"):
            if self._is_muted:
                logger.warning("Call is already muted", extra={"call_id": self._id})
                return
            self._call_transport_sync("mute")
            self._is_muted = True
            self._emit(CallEventType.MUTED)

    def unmute(self) -> None:
        with self._operation("unmute", capability="unmute"):
            if not self._is_muted:
                logger.warning("Call is not muted", extra={"call_id": self._id})
                return
            self._call_transport_sync("unmute")
            self._is_muted = False
            self._emit(CallEventType.UNMUTED)

    async def send_dtmf(
        self,
        tones: str,
        duration_ms: Optional[int] = None,
        inter_tone_gap_ms: Optional[int] = None,
        transport_type: Optional[str] = None,
    ) -> None:
        """
        Envia tons DTMF em sequência.

        Chamadas concorrentes são serializadas (fila).

        Args:
            tones: Um ou mais dígitos 0-9, A-D, *, #
            duration_ms: Duração de cada tom
            inter_tone_gap_ms: Intervalo entre tons
            transport_type: "INFO" para SIP INFO (padrão RFC2833)
        """
        with self._operation("send_dtmf", capability="send_dtmf"):
            self._require_state("send DTMF", CallState.ACTIVE)
            if not tones or not DTMF_PATTERN.match(tones):
                raise ValueError(f"Invalid DTMF tone: {tones}. Valid characters: 0-9, A-D, *, #")

            duration = duration_ms if duration_ms is not None else self._settings.dtmf_duration_ms
            gap = inter_tone_gap_ms if inter_tone_gap_ms is not None else self._settings.dtmf_inter_tone_gap_ms
            options: Dict[str, Any] = {"duration": duration}
            if transport_type:
                options["transport_type"] = transport_type

            async with self._dtmf_lock:
                for index, tone in enumerate(tones):
                    await self._call_transport("send_dtmf", tone, dict(options))
                    self._emit(CallEventType.DTMF_SENT, tone=tone)
                    if index < len(tones) - 1 and gap:
                        await asyncio.sleep(gap / 1000)

    async def transfer(self, target: str, extra_headers: Optional[List[str]] = None) -> None:
        """
        Transferência cega (REFER).

        A sessão pode ou não terminar como efeito colateral, conforme o transporte.
        """
        with self._operation("transfer", capability="transfer"):
            self._require_state("transfer", CallState.ACTIVE)

            logger.info(
                f"Initiating blind transfer to: {target}",
                extra={"call_id": self._id, "target": target}
            )
            await self._call_transport("transfer", target, list(extra_headers) if extra_headers else None)
            self._emit(CallEventType.TRANSFER_INITIATED, target=target, transfer_type="blind")

    async def attended_transfer(self, target: str, consultation_call_id: str) -> None:
        """Transferência assistida usando chamada de consulta já estabelecida."""
        with self._operation("attended_transfer", capability="attended_transfer"):
            # Original fica em HELD durante a consulta
            self._require_state("transfer", CallState.ACTIVE, CallState.HELD)

            logger.info(
                f"Initiating attended transfer to: {target} (replacing call: {consultation_call_id})",
                extra={"call_id": self._id, "target": target}
            )
            await self._call_transport("attended_transfer", target, consultation_call_id)
            self._emit(
                CallEventType.TRANSFER_INITIATED,
                target=target,
                transfer_type="attended",
                consultation_call_id=consultation_call_id,
            )

    # ========================================
    # EVENTOS DO TRANSPORTE
    # ========================================

    def _bind_transport(self) -> None:
        subscribe = getattr(self._transport, "on", None)
        if not callable(subscribe):
            return
        for name in TRANSPORT_EVENTS:
            subscribe(name, functools.partial(self.handle_transport_event, name))

    def handle_transport_event(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """
        Traduz evento nativo do transporte em transição de estado.

        Args:
            name: progress, accepted, confirmed, ended, failed, hold, unhold, muted, unmuted
            payload: Dados do transporte (status_code, originator, cause...)
        """
        payload = payload or {}
        handler = getattr(self, f"_on_{name}", None)
        if handler is None:
            logger.debug(f"Unhandled transport event: {name}", extra={"call_id": self._id})
            return
        handler(payload)

    def _on_progress(self, payload: Dict[str, Any]) -> None:
        code = payload.get("status_code")
        if code == 180:
            self._update_state(CallState.RINGING)
        elif code == 183:
            self._update_state(CallState.EARLY_MEDIA)
        self._emit(
            CallEventType.PROGRESS,
            response_code=code,
            reason_phrase=payload.get("reason_phrase"),
        )

    def _on_accepted(self, payload: Dict[str, Any]) -> None:
        logger.info(f"Call accepted: {self._id}", extra={"call_id": self._id})
        self._timing.answer_time = _now()
        self._emit(CallEventType.ACCEPTED, response_code=payload.get("status_code"))

    def _on_confirmed(self, payload: Dict[str, Any]) -> None:
        logger.info(f"Call confirmed: {self._id}", extra={"call_id": self._id})
        if self._timing.answer_time is None:
            self._timing.answer_time = _now()
        self._update_state(CallState.ACTIVE)
        self._emit(CallEventType.CONFIRMED)

    def _on_ended(self, payload: Dict[str, Any]) -> None:
        if self._state.is_terminal:
            logger.debug(f"Ended event after terminal state: {self._id}", extra={"call_id": self._id})
            return
        self._finish(
            CallState.TERMINATED,
            _map_termination_cause(payload.get("cause")),
            originator=payload.get("originator"),
        )

    def _on_failed(self, payload: Dict[str, Any]) -> None:
        if self._state.is_terminal:
            return
        logger.error(f"Call failed: {self._id}", extra={"call_id": self._id})
        self._finish(
            CallState.FAILED,
            _map_termination_cause(payload.get("cause")),
            originator=payload.get("originator"),
            response_code=payload.get("status_code"),
            reason_phrase=payload.get("reason_phrase"),
            message=payload.get("message"),
        )

    def _on_hold(self, payload: Dict[str, Any]) -> None:
        originator = payload.get("originator", "local")
        if originator == "local":
            if self._is_on_hold:
                return
            self._is_on_hold = True
            self._update_state(CallState.HELD)
        else:
            self._update_state(CallState.REMOTE_HELD)
        self._emit(CallEventType.HOLD, originator=originator)

    def _on_unhold(self, payload: Dict[str, Any]) -> None:
        originator = payload.get("originator", "local")
        if originator == "local":
            if not self._is_on_hold:
                return
            self._is_on_hold = False
        elif self._is_on_hold:
            # Hold local continua valendo
            self._emit(CallEventType.UNHOLD, originator=originator)
            return
        self._update_state(CallState.ACTIVE)
        self._emit(CallEventType.UNHOLD, originator=originator)

    def _on_muted(self, payload: Dict[str, Any]) -> None:
        self._is_muted = True

    def _on_unmuted(self, payload: Dict[str, Any]) -> None:
        self._is_muted = False

    def _finish(
        self,
        state: CallState,
        cause: Optional[TerminationCause],
        **data: Any,
    ) -> None:
        """Transição terminal: timing, causa, evento e limpeza."""
        end_time = _now()
        self._timing.end_time = end_time
        answer_time = self._timing.answer_time
        start_time = self._timing.start_time

        if answer_time and end_time > answer_time:
            self._timing.duration = int((end_time - answer_time).total_seconds())
        if start_time and answer_time and answer_time > start_time:
            self._timing.ring_duration = int((answer_time - start_time).total_seconds())

        self._termination_cause = cause
        self._is_on_hold = False
        self._update_state(state)

        event_type = CallEventType.ENDED if state == CallState.TERMINATED else CallEventType.FAILED
        self._emit(event_type, cause=cause.value if cause else None, **data)
        self._cleanup()

    def _cleanup(self) -> None:
        logger.debug(f"Cleaning up call session: {self._id}", extra={"call_id": self._id})
        remove_listeners = getattr(self._transport, "remove_all_listeners", None)
        if callable(remove_listeners):
            remove_listeners()

    def __repr__(self) -> str:
        return f"CallSession({self._id}, state={self._state.value}, direction={self._direction.value})"


def _validate_uri(uri: str, field_name: str) -> None:
    if not uri:
        raise ValueError(f"{field_name} is required")
    if not SIP_URI_PATTERN.match(uri):
        raise ValueError(
            f"Invalid SIP URI format for {field_name}: {uri}. "
            "Expected format: sip:user@host or sips:user@host"
        )


def _map_termination_cause(cause: Optional[str]) -> TerminationCause:
    return TERMINATION_CAUSE_MAP.get(cause or "", TerminationCause.OTHER)


def _spawn(awaitable: Any, call_id: str, operation: str) -> Optional[asyncio.Future]:
    """Executa awaitable em background no loop atual, logando falhas."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        logger.warning(
            f"No running event loop, skipping background {operation}",
            extra={"call_id": call_id}
        )
        return None

    future = asyncio.ensure_future(awaitable, loop=loop)

    def _done(task: asyncio.Future) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Error during {operation}: {task.exception()}",
                extra={"call_id": call_id}
            )

    future.add_done_callback(_done)
    return future


def create_call_session(
    transport: Any,
    direction: CallDirection,
    local_uri: str,
    event_bus: EventBus,
    data: Optional[Dict[str, Any]] = None,
    settings: Optional[CallControlSettings] = None,
    remote_uri: Optional[str] = None,
) -> CallSession:
    """
    Cria CallSession a partir do objeto de transporte.

    Estado inicial: RINGING para entrada, CALLING para saída.
    """
    call_id = getattr(transport, "id", None) or f"call-{uuid.uuid4().hex[:12]}"
    remote_uri = remote_uri or getattr(transport, "remote_uri", None) or "sip:unknown@unknown"
    direction = CallDirection(direction)
    initial_state = CallState.RINGING if direction == CallDirection.INCOMING else CallState.CALLING

    return CallSession(
        call_id=str(call_id),
        direction=direction,
        local_uri=local_uri,
        remote_uri=str(remote_uri),
        transport=transport,
        event_bus=event_bus,
        remote_display_name=getattr(transport, "remote_display_name", None),
        data=data,
        initial_state=initial_state,
        settings=settings,
    )
