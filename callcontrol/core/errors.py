"""
Erros do controle de chamadas.

Todas as falhas do engine sobem como subclasses de CallControlError,
para que a camada superior possa tratar por categoria sem inspecionar texto.
"""

from typing import Optional


class CallControlError(Exception):
    """Erro base do controle de chamadas."""

    default_detail: str = "Call control error"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class PreconditionError(CallControlError):
    """Operação chamada sem o estado/colaborador necessário."""

    default_detail = "Precondition not met"


class NotFoundError(CallControlError):
    """Chamada ou sessão não existe no registro."""

    default_detail = "Call not found"


class NotImplementedCapability(CallControlError, NotImplementedError):
    """Objeto de transporte não expõe o método necessário."""

    default_detail = "Capability not implemented"

    def __init__(self, capability: str, owner: str = "CallSession") -> None:
        self.capability = capability
        super().__init__(f"{owner}.{capability}() is not implemented")


class ConflictError(CallControlError):
    """Violação de single-flight (ex.: segunda transferência ativa)."""

    default_detail = "Another transfer is already in progress"


class OperationFailureError(CallControlError):
    """Transporte rejeitou a requisição."""

    default_detail = "Operation failed"

    def __init__(self, detail: Optional[str] = None, operation: Optional[str] = None) -> None:
        super().__init__(detail)
        self.operation = operation


class EventTimeoutError(CallControlError, TimeoutError):
    """Timeout aguardando evento no EventBus."""

    default_detail = "Timeout waiting for event"
