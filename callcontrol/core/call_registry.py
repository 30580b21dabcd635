"""
Call Registry - Registro das CallSessions ativas.

Implementa a superfície SipClient consumida pelo TransferController
(get_active_call / make_call). Sessões são removidas automaticamente
quando terminam (call:ended / call:failed).
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable

from ..config import CallControlSettings
from .call_session import CallSession, create_call_session
from .errors import CallControlError, ConflictError, PreconditionError
from .event_bus import EventBus
from .events import CallEvent, CallEventType
from .types import CallDirection

logger = logging.getLogger(__name__)

# Cria a sessão de transporte para uma chamada de saída
Dialer = Callable[..., Awaitable[Any]]


@runtime_checkable
class SipClient(Protocol):
    """Colaborador usado pelo TransferController."""

    def get_active_call(self, call_id: str) -> Optional[CallSession]: ...

    async def make_call(self, uri: str, video: bool = False) -> str: ...


class CallRegistry:
    """
    Registro em memória de chamadas.

    Uso:
        registry = CallRegistry(bus, local_uri="sip:alice@example.com", dialer=ua.call)
        call_id = await registry.make_call("sip:bob@example.com")
        session = registry.get_active_call(call_id)
    """

    def __init__(
        self,
        event_bus: EventBus,
        local_uri: str,
        dialer: Optional[Dialer] = None,
        settings: Optional[CallControlSettings] = None,
    ):
        """
        Args:
            event_bus: EventBus compartilhado pelas sessões
            local_uri: URI SIP local (usada nas chamadas de saída)
            dialer: async (uri, video=...) -> objeto de transporte
            settings: Configuração repassada às sessões criadas
        """
        self.events = event_bus
        self.local_uri = local_uri
        self._dialer = dialer
        self._settings = settings
        self._sessions: Dict[str, CallSession] = {}

        self._listener_ids = [
            self.events.register(CallEventType.ENDED, self._on_call_finished, priority=-10),
            self.events.register(CallEventType.FAILED, self._on_call_finished, priority=-10),
        ]

    @property
    def active_call_count(self) -> int:
        return len(self._sessions)

    def add(self, session: CallSession) -> CallSession:
        """Registra sessão existente."""
        if session.id in self._sessions:
            raise ConflictError(f"Call already registered: {session.id}")
        self._sessions[session.id] = session
        logger.info("Call registered", extra={
            "call_id": session.id,
            "direction": session.direction.value,
            "active_calls": len(self._sessions),
        })
        return session

    def register_incoming(self, transport: Any, data: Optional[Dict[str, Any]] = None) -> CallSession:
        """Cria e registra sessão para chamada de entrada (estado RINGING)."""
        session = create_call_session(
            transport,
            CallDirection.INCOMING,
            self.local_uri,
            self.events,
            data=data,
            settings=self._settings,
        )
        return self.add(session)

    def remove(self, call_id: str) -> bool:
        session = self._sessions.pop(call_id, None)
        if session is None:
            return False
        logger.info("Call removed", extra={
            "call_id": call_id,
            "active_calls": len(self._sessions),
        })
        return True

    def get_active_call(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    def active_calls(self) -> List[CallSession]:
        return list(self._sessions.values())

    async def make_call(self, uri: str, video: bool = False) -> str:
        """
        Origina chamada de saída.

        Returns:
            ID da nova chamada
        """
        if self._dialer is None:
            raise PreconditionError("No dialer configured")

        logger.info(f"Making call to {uri}", extra={"target": uri, "video": video})
        transport = await self._dialer(uri, video=video)
        session = create_call_session(
            transport,
            CallDirection.OUTGOING,
            self.local_uri,
            self.events,
            data={"video": video},
            settings=self._settings,
            remote_uri=uri,
        )
        self.add(session)
        return session.id

    def _on_call_finished(self, event: CallEvent) -> None:
        if self.remove(event.call_id):
            logger.debug(
                f"Call {event.call_id} left registry on {event.type.value}",
                extra={"call_id": event.call_id}
            )

    async def close(self) -> int:
        """Encerra todas as chamadas e remove assinaturas."""
        for listener_id in self._listener_ids:
            self.events.unregister(listener_id)

        count = 0
        try:
            for session in list(self._sessions.values()):
                if session.state.is_terminal or not session.has_capability("terminate"):
                    continue
                try:
                    await session.terminate()
                    count += 1
                except CallControlError as e:
                    logger.error(
                        f"Error terminating call {session.id} on close: {e}",
                        extra={"call_id": session.id},
                        exc_info=True
                    )
        finally:
            self._sessions.clear()
        return count
