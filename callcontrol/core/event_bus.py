"""
EventBus - Sistema de publicação/assinatura de eventos.

Desacopla produtores (CallSession, TransferController) de consumidores
(UI, logging, outros subsistemas). Handlers reagem a eventos nomeados
sem conhecer quem os emite.

Registros são indexados por id (remoção O(1)); ids vêm de um contador
monotônico e nunca são reutilizados.
"""

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .errors import EventTimeoutError, PreconditionError

logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass
class ListenerRegistration:
    """Registro de um handler no EventBus."""
    id: str
    event: str
    handler: Callable[[Any], Any]
    priority: int = 0
    once: bool = False
    seq: int = 0


class EventBus:
    """
    Event Bus síncrono com suporte a handlers async.

    Funcionalidades:
    - register(name, handler, priority, once, listener_id): Registra handler
    - unregister(listener_id): Remove handler
    - once(name, handler): Handler executado uma vez
    - emit(name, payload): Dispara handlers de forma síncrona
    - emit_async(name, payload): Dispara aguardando handlers async
    - wait_for(name, timeout): Aguarda o próximo payload
    - Wildcards: "*" (todos) e "namespace:*" (ex.: "call:*")

    Ordem de execução: prioridade decrescente, depois ordem de registro.
    Erros em handlers são logados e nunca propagados ao emissor.
    """

    def __init__(self, name: str = "global", max_history: int = 100):
        """
        Args:
            name: Nome do bus (para logging)
            max_history: Tamanho do histórico de eventos
        """
        self.name = name
        self._registrations: Dict[str, ListenerRegistration] = {}
        self._by_event: Dict[str, Dict[str, ListenerRegistration]] = {}
        self._id_counter = itertools.count(1)
        self._seq_counter = itertools.count(1)
        self._history: Deque[Tuple[str, Any]] = deque(maxlen=max_history)
        self._pending_tasks: set = set()
        self._closed = False

        logger.debug("📢 [EVENT_BUS] Initialized", extra={"bus": self.name})

    @classmethod
    def from_settings(cls, name: str = "global", settings=None) -> "EventBus":
        """Cria bus com histórico dimensionado por CallControlSettings.event_history_size."""
        from ..config import get_settings

        settings = settings or get_settings()
        return cls(name=name, max_history=settings.event_history_size)

    @property
    def closed(self) -> bool:
        return self._closed

    # ========================================
    # REGISTRO
    # ========================================

    def register(
        self,
        event: str,
        handler: Callable[[Any], Any],
        priority: int = 0,
        once: bool = False,
        listener_id: Optional[str] = None,
    ) -> str:
        """
        Registra handler para um evento.

        O handler pode ser sync ou async.

        Args:
            event: Nome do evento (ou wildcard)
            handler: Função chamada com o payload
            priority: Maior prioridade executa primeiro
            once: Remove o handler antes da primeira execução
            listener_id: Id explícito (gerado se omitido)

        Returns:
            Id do registro, usado em unregister()
        """
        event = _event_name(event)
        if self._closed:
            logger.warning(
                f"EventBus closed, ignoring handler registration for {event}",
                extra={"bus": self.name}
            )
            return listener_id or ""

        if listener_id is None:
            listener_id = f"listener_{next(self._id_counter)}"
        elif listener_id in self._registrations:
            self.unregister(listener_id)

        registration = ListenerRegistration(
            id=listener_id,
            event=event,
            handler=handler,
            priority=priority,
            once=once,
            seq=next(self._seq_counter),
        )
        self._registrations[listener_id] = registration
        self._by_event.setdefault(event, {})[listener_id] = registration

        logger.debug(
            f"Handler registered for {event} (id: {listener_id}, priority: {priority})",
            extra={"bus": self.name}
        )
        return listener_id

    def on(self, event: str, handler: Callable[[Any], Any], priority: int = 0) -> str:
        return self.register(event, handler, priority=priority)

    def once(self, event: str, handler: Callable[[Any], Any], priority: int = 0) -> str:
        """Registra handler que executa apenas uma vez."""
        return self.register(event, handler, priority=priority, once=True)

    def unregister(self, listener_id: str) -> bool:
        """
        Remove registro por id. Idempotente.

        Returns:
            True se algo foi removido
        """
        registration = self._registrations.pop(listener_id, None)
        if registration is None:
            return False

        listeners = self._by_event.get(registration.event)
        if listeners is not None:
            listeners.pop(listener_id, None)
            if not listeners:
                del self._by_event[registration.event]

        logger.debug(
            f"Handler removed for {registration.event}",
            extra={"bus": self.name}
        )
        return True

    def off(self, event: str, handler_or_id: Any) -> bool:
        """Remove handler por id ou pela própria função."""
        if isinstance(handler_or_id, str):
            return self.unregister(handler_or_id)

        for registration in list(self._by_event.get(_event_name(event), {}).values()):
            if registration.handler == handler_or_id:
                return self.unregister(registration.id)
        return False

    def remove_all_listeners(self, event: Optional[str] = None) -> None:
        """Remove handlers de um evento, ou de todos."""
        if event is None:
            self._registrations.clear()
            self._by_event.clear()
            logger.debug("All listeners removed", extra={"bus": self.name})
            return

        event = _event_name(event)
        for listener_id in list(self._by_event.pop(event, {})):
            self._registrations.pop(listener_id, None)
        logger.debug(f"All listeners removed for event: {event}", extra={"bus": self.name})

    # ========================================
    # EMISSÃO
    # ========================================

    def _collect(self, event: str) -> List[ListenerRegistration]:
        """Handlers diretos + wildcards, ordenados por prioridade/registro."""
        collected = list(self._by_event.get(event, {}).values())

        if event != WILDCARD:
            collected.extend(self._by_event.get(WILDCARD, {}).values())

        for pattern, listeners in self._by_event.items():
            if pattern.endswith(":*") and pattern != event:
                namespace = pattern[:-2]
                if event.startswith(namespace + ":"):
                    collected.extend(listeners.values())

        collected.sort(key=lambda r: (-r.priority, r.seq))
        return collected

    def _prepare(self, event: str, payload: Any) -> List[ListenerRegistration]:
        self._history.append((event, payload))

        registrations = self._collect(event)
        log_level = logging.INFO if event.startswith("transfer") else logging.DEBUG
        logger.log(
            log_level,
            f"📢 [EVENT_BUS] {event}",
            extra={
                "bus": self.name,
                "event_type": event,
                "handlers_count": len(registrations),
                "event_data": str(payload)[:200],
            }
        )

        # once: remover antes de invocar (evita disparo duplo reentrante)
        for registration in registrations:
            if registration.once:
                self.unregister(registration.id)
        return registrations

    def emit(self, event: str, payload: Any = None) -> None:
        """
        Emite evento de forma síncrona.

        Handlers async são agendados no loop em execução; suas falhas
        também são logadas.

        Args:
            event: Nome do evento
            payload: Dados do evento
        """
        if self._closed:
            return

        event = _event_name(event)
        for registration in self._prepare(event, payload):
            try:
                result = registration.handler(payload)
            except Exception as e:
                logger.error(
                    f"Error in event handler for {event}: {e}",
                    extra={"bus": self.name, "listener_id": registration.id},
                    exc_info=True
                )
                continue

            if asyncio.iscoroutine(result):
                self._schedule(event, registration, result)

    async def emit_async(self, event: str, payload: Any = None) -> None:
        """Emite evento aguardando handlers async em sequência."""
        if self._closed:
            return

        event = _event_name(event)
        for registration in self._prepare(event, payload):
            try:
                result = registration.handler(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Error in event handler for {event}: {e}",
                    extra={"bus": self.name, "listener_id": registration.id},
                    exc_info=True
                )

    def _schedule(self, event: str, registration: ListenerRegistration, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.error(
                f"Async handler for {event} skipped: no running event loop",
                extra={"bus": self.name, "listener_id": registration.id}
            )
            return

        task = loop.create_task(coro)
        self._pending_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    f"Error in async event handler for {event}: {exc}",
                    extra={"bus": self.name, "listener_id": registration.id},
                    exc_info=exc
                )

        task.add_done_callback(_done)

    # ========================================
    # ESPERA
    # ========================================

    async def wait_for(self, event: str, timeout: Optional[float] = None) -> Any:
        """
        Aguarda o próximo payload do evento.

        O registro temporário é removido em qualquer caminho de saída.

        Args:
            event: Nome do evento
            timeout: Timeout em segundos (None = infinito)

        Returns:
            Payload recebido

        Raises:
            EventTimeoutError: Se o timeout expirar antes do evento
            PreconditionError: Se o bus já foi fechado

        Example:
            payload = await bus.wait_for("call:confirmed", timeout=30)
        """
        event = _event_name(event)
        if self._closed:
            raise PreconditionError("EventBus closed")

        future = asyncio.get_running_loop().create_future()

        def capture(payload: Any) -> None:
            if not future.done():
                future.set_result(payload)

        listener_id = self.once(event, capture)
        try:
            if timeout is None:
                return await future
            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                raise EventTimeoutError(f"Timeout waiting for event: {event}") from None
        finally:
            self.unregister(listener_id)

    # ========================================
    # CONSULTA / DEBUG
    # ========================================

    def listener_count(self, event: str) -> int:
        return len(self._by_event.get(_event_name(event), {}))

    def has_listeners(self, event: str) -> bool:
        return self.listener_count(event) > 0

    def event_names(self) -> List[str]:
        return list(self._by_event.keys())

    def get_history(self, event: Optional[str] = None, limit: int = 10) -> List[Tuple[str, Any]]:
        """Retorna histórico de eventos (mais recentes por último)."""
        if event:
            event = _event_name(event)
            filtered = [item for item in self._history if item[0] == event]
        else:
            filtered = list(self._history)
        return filtered[-limit:]

    def close(self) -> None:
        """
        Fecha o EventBus.

        Novos eventos são ignorados após fechar.
        """
        self._closed = True
        handlers_cleared = len(self._registrations)
        self.remove_all_listeners()

        logger.info(
            "📢 [EVENT_BUS] Closed",
            extra={
                "bus": self.name,
                "events_processed": len(self._history),
                "handlers_cleared": handlers_cleared,
            }
        )


def _event_name(event: Any) -> str:
    """Aceita str ou membros de Enum (CallEventType, TransferEventType)."""
    value = getattr(event, "value", event)
    return str(value)
