"""
Tipos compartilhados: estados de chamada e de transferência.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class CallState(str, Enum):
    """
    Estados de uma CallSession.

    Linear, sem arestas de volta exceto ACTIVE <-> HELD/REMOTE_HELD.
    TERMINATED e FAILED são terminais.
    """

    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    ANSWERING = "answering"
    EARLY_MEDIA = "early_media"
    ACTIVE = "active"
    HELD = "held"
    REMOTE_HELD = "remote_held"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallState.TERMINATED, CallState.FAILED)


class CallDirection(str, Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class TerminationCause(str, Enum):
    """Motivo de encerramento normalizado."""

    CANCELED = "canceled"
    REJECTED = "rejected"
    NO_ANSWER = "no_answer"
    UNAVAILABLE = "unavailable"
    BUSY = "busy"
    BYE = "bye"
    REQUEST_TIMEOUT = "request_timeout"
    WEBRTC_ERROR = "webrtc_error"
    INTERNAL_ERROR = "internal_error"
    NETWORK_ERROR = "network_error"
    OTHER = "other"


# Mapeamento de causas do transporte para TerminationCause
TERMINATION_CAUSE_MAP = {
    "Canceled": TerminationCause.CANCELED,
    "Rejected": TerminationCause.REJECTED,
    "No Answer": TerminationCause.NO_ANSWER,
    "Unavailable": TerminationCause.UNAVAILABLE,
    "Busy": TerminationCause.BUSY,
    "BYE": TerminationCause.BYE,
    "Request Timeout": TerminationCause.REQUEST_TIMEOUT,
    "WebRTC Error": TerminationCause.WEBRTC_ERROR,
    "Internal Error": TerminationCause.INTERNAL_ERROR,
    "Connection Error": TerminationCause.NETWORK_ERROR,
}


class TransferState(str, Enum):
    """Estados de uma transferência."""

    IDLE = "idle"
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferState.COMPLETED, TransferState.FAILED, TransferState.CANCELED)


class TransferType(str, Enum):
    BLIND = "blind"          # Transferência direta, sem consulta
    ATTENDED = "attended"    # Consulta antes de transferir


# Progresso (%) por estado, usado por get_transfer_progress()
TRANSFER_PROGRESS = {
    TransferState.IDLE: 0,
    TransferState.INITIATED: 25,
    TransferState.IN_PROGRESS: 50,
    TransferState.ACCEPTED: 75,
    TransferState.COMPLETED: 100,
    TransferState.FAILED: 0,
    TransferState.CANCELED: 0,
}


@dataclass
class CallTimingInfo:
    """Tempos da chamada (durações em segundos inteiros)."""

    start_time: Optional[datetime] = None
    answer_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    ring_duration: Optional[int] = None
