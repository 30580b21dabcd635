"""
Transfer Controller - Orquestra transferências de chamadas.

Funcionalidades:
- Transferência cega (blind) e assistida (attended) com chamada de consulta
- Single-flight: no máximo uma transferência não-terminal por controller
- Cancelamento com ações compensatórias (hangup da consulta, unhold)
- Estado terminal visível por um intervalo antes de voltar a Idle
- Eventos "transfer:<estado>" para listeners locais (e EventBus opcional)
"""

import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..config import CallControlSettings, get_settings
from ..core.call_registry import SipClient
from ..core.call_session import invoke_capability, require_capability
from ..core.errors import ConflictError, NotFoundError, PreconditionError
from ..core.event_bus import EventBus
from ..core.events import TransferEvent, utcnow
from ..core.timeout_manager import TimeoutManager
from ..core.types import TRANSFER_PROGRESS, TransferState, TransferType
from ..logging_config import CallLogContext
from ..utils.metrics import CallControlMetrics, get_metrics

logger = logging.getLogger(__name__)

CLEAR_TASK = "transfer_clear"


@dataclass
class TransferRecord:
    """Transferência ativa."""
    id: str
    type: TransferType
    call_id: str
    target: str
    state: TransferState
    initiated_at: datetime = field(default_factory=utcnow)
    consultation_call_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


@dataclass
class TransferProgress:
    """Snapshot de progresso para a UI."""
    id: str
    type: TransferType
    state: TransferState
    target: str
    progress: int


TransferListener = Callable[[TransferEvent], Any]


class TransferController:
    """
    Controla transferências de uma instância de cliente SIP.

    Uso:
        controller = TransferController(sip_client)

        # Blind
        await controller.blind_transfer("call-123", "sip:target@example.com")

        # Attended
        consultation_id = await controller.initiate_attended_transfer(
            "call-123", "sip:consult@example.com"
        )
        await controller.complete_attended_transfer()  # ou cancel_transfer()
    """

    def __init__(
        self,
        sip_client: Optional[SipClient] = None,
        event_bus: Optional[EventBus] = None,
        settings: Optional[CallControlSettings] = None,
        metrics: Optional[CallControlMetrics] = None,
    ):
        """
        Args:
            sip_client: Registro de chamadas (get_active_call / make_call)
            event_bus: EventBus compartilhado para espelhar eventos (opcional)
            settings: Atrasos de limpeza e header de encaminhamento
            metrics: Métricas (usa instância global se não fornecido)
        """
        self._sip_client = sip_client
        self._events = event_bus
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()

        self._active: Optional[TransferRecord] = None
        self._consultation: Optional[Any] = None
        self._in_flight = False
        self._completing = False
        self._disposed = False

        self._listeners: Dict[int, TransferListener] = {}
        self._listener_counter = 0

        self._timeouts = TimeoutManager(owner="transfer_controller")

    # ========================================
    # ESTADO
    # ========================================

    @property
    def sip_client(self) -> Optional[SipClient]:
        return self._sip_client

    @sip_client.setter
    def sip_client(self, client: Optional[SipClient]) -> None:
        self._sip_client = client

    @property
    def active_transfer(self) -> Optional[TransferRecord]:
        return self._active

    @property
    def transfer_state(self) -> TransferState:
        return self._active.state if self._active else TransferState.IDLE

    @property
    def is_transferring(self) -> bool:
        """True durante uma operação de início ou com registro não-terminal."""
        if self._in_flight:
            return True
        return self._active is not None and not self._active.is_terminal

    @property
    def consultation_call(self) -> Optional[Any]:
        return self._consultation

    # ========================================
    # TRANSFERÊNCIA CEGA
    # ========================================

    async def blind_transfer(
        self,
        call_id: str,
        target: str,
        extra_headers: Optional[List[str]] = None,
    ) -> None:
        """
        Transfere chamada sem consulta.

        Em sucesso o registro nasce COMPLETED; em falha, FAILED com a
        mensagem do erro (e a exceção é relançada).

        Raises:
            ConflictError: Outra transferência em andamento
            NotFoundError: Chamada não existe
            NotImplementedCapability: Sessão sem transfer()
            OperationFailureError: Transporte rejeitou
        """
        self._begin()
        started = time.monotonic()
        try:
            logger.info(
                f"🔀 [TRANSFER] Starting blind transfer of call {call_id} to {target}",
                extra={"call_id": call_id, "target": target}
            )
            session = self._resolve(call_id)
            await invoke_capability(session, "transfer", target, extra_headers)
        except Exception as e:
            self._in_flight = False
            record = self._new_record(TransferType.BLIND, call_id, target, TransferState.FAILED)
            self._finish(record, started, error=str(e) or "Blind transfer failed")
            raise
        finally:
            self._in_flight = False

        record = self._new_record(TransferType.BLIND, call_id, target, TransferState.COMPLETED)
        self._finish(record, started)
        logger.info(
            "🔀 [TRANSFER] Blind transfer completed successfully",
            extra={"call_id": call_id, "transfer_id": record.id}
        )

    async def forward_call(self, call_id: str, target: str) -> None:
        """
        Encaminha chamada (no-answer/always) via transferência cega
        com header Diversion.
        """
        logger.info(f"Forwarding call {call_id} to {target}", extra={"call_id": call_id})
        await self.blind_transfer(call_id, target, [self._settings.forward_diversion_header])

    # ========================================
    # TRANSFERÊNCIA ASSISTIDA
    # ========================================

    async def initiate_attended_transfer(self, call_id: str, target: str) -> str:
        """
        Coloca a chamada original em espera e cria a chamada de consulta.

        Falhas antes da criação do registro (hold, make_call) não geram
        registro FAILED: o controller permanece Idle e só a exceção informa.

        Returns:
            ID da chamada de consulta
        """
        self._begin()
        try:
            logger.info(
                f"🔀 [TRANSFER] Starting attended transfer of call {call_id} to {target}",
                extra={"call_id": call_id, "target": target}
            )
            session = self._resolve(call_id)

            logger.debug("Putting original call on hold", extra={"call_id": call_id})
            await invoke_capability(session, "hold")

            logger.debug("Creating consultation call", extra={"call_id": call_id})
            consultation_call_id = await invoke_capability(
                self._sip_client, "make_call", target, owner="SipClient", video=False
            )
        except Exception as e:
            logger.error(
                f"🔀 [TRANSFER] Attended transfer initiation failed: {e}",
                extra={"call_id": call_id, "target": target}
            )
            self._metrics.record_transfer(TransferType.ATTENDED.value, "initiation_failed")
            raise
        finally:
            self._in_flight = False

        self._consultation = self._sip_client.get_active_call(consultation_call_id)
        record = self._new_record(
            TransferType.ATTENDED,
            call_id,
            target,
            TransferState.IN_PROGRESS,
            consultation_call_id=consultation_call_id,
        )
        self._active = record
        self._emit(record)

        logger.info(
            f"🔀 [TRANSFER] Attended transfer initiated, consultation call: {consultation_call_id}",
            extra={"call_id": call_id, "transfer_id": record.id}
        )
        return consultation_call_id

    async def complete_attended_transfer(self) -> None:
        """
        Conecta a chamada original à consulta e sai da conversa.

        Raises:
            PreconditionError: Sem transferência assistida ativa / sem consulta
            NotFoundError: Chamada original sumiu do registro
        """
        record = self._active
        if record is None or record.type != TransferType.ATTENDED or record.is_terminal:
            raise PreconditionError("No active attended transfer")
        if self._consultation is None:
            raise PreconditionError("No consultation call found")
        self._require_client()
        if self._completing:
            raise ConflictError("Attended transfer completion already in progress")

        self._completing = True
        started = record.initiated_at
        try:
            logger.info(
                "🔀 [TRANSFER] Completing attended transfer",
                extra={"call_id": record.call_id, "transfer_id": record.id}
            )
            session = self._resolve(record.call_id)
            consultation_id = getattr(self._consultation, "id", None) or record.consultation_call_id
            await invoke_capability(session, "attended_transfer", record.target, consultation_id)
        except Exception as e:
            if self._is_current(record):
                self._update_state(record, TransferState.FAILED, error=str(e) or "Attended transfer completion failed")
                self._record_outcome(record, _elapsed_since(started))
                self._schedule_clear(record, self._settings.transfer_completion_delay)
            raise
        finally:
            self._completing = False

        if not self._is_current(record):
            # Cancelado ou substituído durante o REFER
            logger.warning(
                f"🔀 [TRANSFER] Transfer already {record.state.value}, ignoring completion result",
                extra={"call_id": record.call_id, "transfer_id": record.id}
            )
            return

        self._update_state(record, TransferState.COMPLETED)
        self._record_outcome(record, _elapsed_since(started))
        self._schedule_clear(record, self._settings.transfer_completion_delay)
        logger.info(
            "🔀 [TRANSFER] Attended transfer completed successfully",
            extra={"call_id": record.call_id, "transfer_id": record.id}
        )

    # ========================================
    # CANCELAMENTO
    # ========================================

    async def cancel_transfer(self) -> None:
        """
        Cancela a transferência atual.

        Attended: desliga a consulta (se houver referência) e SEMPRE tenta
        unhold da original. Blind: só atualiza o estado local; a requisição
        já enviada ao transporte não é abortada.
        """
        record = self._active
        if record is None or record.state in (TransferState.COMPLETED, TransferState.CANCELED):
            raise PreconditionError("No active transfer to cancel")
        self._require_client()

        logger.info(
            "🔀 [TRANSFER] Canceling transfer",
            extra={"call_id": record.call_id, "transfer_id": record.id}
        )
        self._timeouts.cancel(CLEAR_TASK)

        if record.type == TransferType.ATTENDED:
            try:
                consultation = self._consultation
                if consultation is not None:
                    logger.debug("Ending consultation call", extra={"call_id": record.call_id})
                    self._consultation = None
                    await invoke_capability(consultation, "terminate")
            finally:
                await self._unhold_original(record)

        self._update_state(record, TransferState.CANCELED)
        self._record_outcome(record, _elapsed_since(record.initiated_at))
        self._schedule_clear(record, self._settings.transfer_cancellation_delay)
        logger.info("🔀 [TRANSFER] Transfer canceled", extra={"transfer_id": record.id})

    async def _unhold_original(self, record: TransferRecord) -> None:
        session = self._sip_client.get_active_call(record.call_id)
        if session is None:
            logger.warning(
                f"Original call {record.call_id} not found, skipping unhold",
                extra={"call_id": record.call_id}
            )
            return
        logger.debug("Unholding original call", extra={"call_id": record.call_id})
        await invoke_capability(session, "unhold")

    # ========================================
    # CONSULTA / EVENTOS
    # ========================================

    def get_transfer_progress(self) -> Optional[TransferProgress]:
        record = self._active
        if record is None:
            return None
        return TransferProgress(
            id=record.id,
            type=record.type,
            state=record.state,
            target=record.target,
            progress=TRANSFER_PROGRESS[record.state],
        )

    def on_transfer_event(self, callback: TransferListener) -> Callable[[], bool]:
        """
        Registra listener de eventos de transferência.

        Returns:
            Função que remove o listener (idempotente)
        """
        self._listener_counter += 1
        listener_id = self._listener_counter
        self._listeners[listener_id] = callback

        def unsubscribe() -> bool:
            return self._listeners.pop(listener_id, None) is not None

        return unsubscribe

    def _emit(self, record: TransferRecord) -> None:
        event = TransferEvent(
            type=f"transfer:{record.state.value}",
            transfer_id=record.id,
            state=record.state,
            transfer_type=record.type,
            target=record.target,
            call_id=record.call_id,
            consultation_call_id=record.consultation_call_id,
            error=record.error,
        )
        logger.debug(f"Transfer event: {event.type}", extra={"transfer_id": record.id})

        for listener_id, listener in list(self._listeners.items()):
            try:
                result = listener(event)
                if inspect.iscoroutine(result):
                    result.close()
                    logger.warning(
                        "Async transfer listeners are not awaited; use the shared EventBus",
                        extra={"listener_id": listener_id}
                    )
            except Exception as e:
                logger.error(
                    f"Error in transfer event listener: {e}",
                    extra={"transfer_id": record.id, "listener_id": listener_id},
                    exc_info=True
                )

        if self._events is not None:
            self._events.emit(event.type, event)

    # ========================================
    # INTERNOS
    # ========================================

    def _require_client(self) -> SipClient:
        if self._sip_client is None:
            raise PreconditionError("SIP client not initialized")
        return self._sip_client

    def _begin(self) -> None:
        """Checagens síncronas antes do primeiro await (single-flight)."""
        if self._disposed:
            raise PreconditionError("Transfer controller disposed")
        self._require_client()
        if self.is_transferring:
            raise ConflictError("Another transfer is already in progress")

        self._in_flight = True
        # Nova transferência substitui registro terminal ainda visível
        self._timeouts.cancel(CLEAR_TASK)
        self._active = None
        self._consultation = None

    def _is_current(self, record: TransferRecord) -> bool:
        return self._active is record and not record.is_terminal

    def _resolve(self, call_id: str) -> Any:
        client = self._require_client()
        session = require_capability(client, "get_active_call", owner="SipClient")(call_id)
        if session is None:
            raise NotFoundError(f"Call {call_id} not found")
        return session

    def _new_record(
        self,
        transfer_type: TransferType,
        call_id: str,
        target: str,
        state: TransferState,
        consultation_call_id: Optional[str] = None,
    ) -> TransferRecord:
        return TransferRecord(
            id=f"transfer-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}",
            type=transfer_type,
            call_id=call_id,
            target=target,
            state=state,
            consultation_call_id=consultation_call_id,
        )

    def _finish(self, record: TransferRecord, started: float, error: Optional[str] = None) -> None:
        """Publica registro de transferência cega já em estado terminal."""
        record.error = error
        record.completed_at = utcnow()
        self._active = record
        if error:
            logger.error(
                f"🔀 [TRANSFER] Blind transfer failed: {error}",
                extra={"call_id": record.call_id, "transfer_id": record.id}
            )
        self._emit(record)
        self._record_outcome(record, time.monotonic() - started)
        self._schedule_clear(record, self._settings.transfer_completion_delay)

    def _update_state(self, record: TransferRecord, state: TransferState, error: Optional[str] = None) -> None:
        record.state = state
        if error:
            record.error = error
        if state.is_terminal:
            record.completed_at = utcnow()
        self._emit(record)

    def _record_outcome(self, record: TransferRecord, duration_seconds: float) -> None:
        self._metrics.record_transfer(record.type.value, record.state.value, duration_seconds)
        with CallLogContext(record.call_id, transfer_id=record.id) as log:
            log.log_transfer(
                target=record.target,
                transfer_type=record.type.value,
                success=record.state == TransferState.COMPLETED,
                error=record.error,
            )

    def _schedule_clear(self, record: TransferRecord, delay: float) -> None:
        def clear() -> None:
            if self._active is not record:
                return
            self._active = None
            self._consultation = None
            logger.debug("Transfer state cleared", extra={"transfer_id": record.id})

        self._timeouts.schedule(CLEAR_TASK, delay, clear)

    def dispose(self) -> None:
        """Cancela timers e descarta estado; o controller não aceita novas transferências."""
        self._timeouts.cancel_all()
        self._active = None
        self._consultation = None
        self._listeners.clear()
        self._disposed = True
        logger.debug("Transfer controller disposed")

    async def close(self) -> None:
        self.dispose()


def _elapsed_since(started: datetime) -> float:
    return max(0.0, (utcnow() - started).total_seconds())
