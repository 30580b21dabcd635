"""
Eventos internos do controle de chamadas.

Define as famílias fechadas de eventos publicadas no EventBus:
- CallEventType: ciclo de vida da CallSession
- TransferEventType: ciclo de vida das transferências

Cada família tem um payload próprio; erros têm variante dedicada
(CallErrorEvent), separada das mudanças de estado.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from .types import TransferState, TransferType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallEventType(str, Enum):
    """
    Eventos publicados pela CallSession.

    Os valores são os nomes usados no EventBus ("call:*").
    """

    # ========================================
    # CHAMADA - Ciclo de vida
    # ========================================
    PROGRESS = "call:progress"
    ACCEPTED = "call:accepted"
    CONFIRMED = "call:confirmed"
    ENDED = "call:ended"
    FAILED = "call:failed"
    STATE_CHANGED = "call:state_changed"

    # ========================================
    # CONTROLES
    # ========================================
    HOLD = "call:hold"
    UNHOLD = "call:unhold"
    MUTED = "call:muted"
    UNMUTED = "call:unmuted"
    DTMF_SENT = "call:dtmf_sent"
    TRANSFER_INITIATED = "call:transfer_initiated"

    # ========================================
    # ERRO - variante dedicada
    # ========================================
    ERROR = "call:error"


class TransferEventType(str, Enum):
    """Eventos do TransferController ("transfer:<estado>")."""

    INITIATED = "transfer:initiated"
    IN_PROGRESS = "transfer:in_progress"
    ACCEPTED = "transfer:accepted"
    COMPLETED = "transfer:completed"
    FAILED = "transfer:failed"
    CANCELED = "transfer:canceled"


@dataclass
class CallEvent:
    """
    Evento de estado/controle de uma chamada.

    Attributes:
        type: Tipo do evento
        call_id: ID da chamada
        session: Snapshot da sessão (CallSession.to_dict())
        data: Dados adicionais (varia por tipo)
        timestamp: Momento do evento
    """

    type: CallEventType
    call_id: str
    session: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def __repr__(self) -> str:
        data_preview = str(self.data)[:50] if self.data else "{}"
        return f"CallEvent({self.type.value}, call={self.call_id}, data={data_preview})"


@dataclass
class CallErrorEvent:
    """Falha de operação da CallSession (nunca confundida com mudança de estado)."""

    call_id: str
    operation: str
    error: str
    error_type: str
    session: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    type: CallEventType = CallEventType.ERROR


@dataclass
class TransferEvent:
    """
    Evento de transferência entregue aos listeners do controller.

    `type` é sempre "transfer:<estado>".
    """

    type: str
    transfer_id: str
    state: TransferState
    transfer_type: TransferType
    target: str
    call_id: str
    consultation_call_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    error: Optional[str] = None


BusPayload = Union[CallEvent, CallErrorEvent, TransferEvent, Any]
