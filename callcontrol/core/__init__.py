"""
Core - Infraestrutura de controle de chamadas.

Componentes:
- CallEvent, TransferEvent: Eventos publicados no barramento
- EventBus: Publicação/assinatura de eventos (wildcards, prioridade, once)
- CallSession: Fachada por chamada sobre o transporte SIP
- CallRegistry: Registro de chamadas ativas (superfície SipClient)
- TimeoutManager: Timers nomeados e canceláveis
"""

from .errors import (
    CallControlError,
    ConflictError,
    EventTimeoutError,
    NotFoundError,
    NotImplementedCapability,
    OperationFailureError,
    PreconditionError,
)
from .types import (
    CallDirection,
    CallState,
    CallTimingInfo,
    TerminationCause,
    TransferState,
    TransferType,
)
from .events import CallErrorEvent, CallEvent, CallEventType, TransferEvent, TransferEventType
from .event_bus import EventBus
from .call_session import CallSession, TransportSession, create_call_session
from .call_registry import CallRegistry, SipClient
from .timeout_manager import TimeoutManager

__all__ = [
    # Erros
    'CallControlError',
    'ConflictError',
    'EventTimeoutError',
    'NotFoundError',
    'NotImplementedCapability',
    'OperationFailureError',
    'PreconditionError',

    # Tipos
    'CallDirection',
    'CallState',
    'CallTimingInfo',
    'TerminationCause',
    'TransferState',
    'TransferType',

    # Eventos
    'CallErrorEvent',
    'CallEvent',
    'CallEventType',
    'TransferEvent',
    'TransferEventType',
    'EventBus',

    # Chamadas
    'CallSession',
    'TransportSession',
    'create_call_session',
    'CallRegistry',
    'SipClient',

    # Timeouts
    'TimeoutManager',
]
