"""
Configuração do controle de chamadas.

Valores padrão podem ser sobrescritos por variáveis de ambiente
CALLCONTROL_* (ver CallControlSettings.from_env).
"""

import logging
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "CALLCONTROL_"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class CallControlSettings(BaseModel):
    """Configuração do engine de chamadas/transferências."""

    # Transfer (segundos)
    transfer_completion_delay: float = 2.0
    transfer_cancellation_delay: float = 1.0

    # CallSession
    hold_timeout: float = 10.0
    dtmf_duration_ms: int = 100
    dtmf_inter_tone_gap_ms: int = 70

    # Encaminhamento (forward_call)
    forward_diversion_header: str = "Diversion: <sip:forwarded>"

    # EventBus
    event_history_size: int = Field(default=100, ge=0)

    # Logging
    log_level: str = "INFO"
    log_json: bool = True
    log_dir: Optional[str] = None

    @field_validator(
        "transfer_completion_delay",
        "transfer_cancellation_delay",
        "hold_timeout",
    )
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError(f"Delay must be non-negative: {v}")
        return v

    @field_validator("dtmf_duration_ms", "dtmf_inter_tone_gap_ms")
    @classmethod
    def validate_dtmf_timing(cls, v):
        if v < 0:
            raise ValueError(f"DTMF timing must be non-negative: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = str(v).upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log_level: {v}")
        return level

    model_config = {"extra": "ignore"}

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "CallControlSettings":
        """
        Carrega configuração de variáveis de ambiente.

        Ex.: CALLCONTROL_TRANSFER_COMPLETION_DELAY=3.5
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        return cls(**values)


_settings: Optional[CallControlSettings] = None


def get_settings() -> CallControlSettings:
    """Retorna instância global (carregada do ambiente na primeira chamada)."""
    global _settings
    if _settings is None:
        _settings = CallControlSettings.from_env()
        logger.debug("Call control settings loaded", extra={"settings": _settings.model_dump()})
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
