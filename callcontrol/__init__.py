# Call Control Engine
# Sessões de chamada SIP, barramento de eventos e orquestração de transferências
#
# Uso:
#   from callcontrol import EventBus, CallRegistry, TransferController

__version__ = "1.0.0"

from .config import CallControlSettings, get_settings, reset_settings
from .core import (
    CallControlError,
    CallRegistry,
    CallSession,
    CallState,
    EventBus,
    TransferState,
    TransferType,
)
from .handlers import TransferController

__all__ = [
    "__version__",
    "CallControlSettings",
    "get_settings",
    "reset_settings",
    "CallControlError",
    "CallRegistry",
    "CallSession",
    "CallState",
    "EventBus",
    "TransferState",
    "TransferType",
    "TransferController",
]
