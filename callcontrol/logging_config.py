"""
Structured Logging Configuration.

Features:
- Logging estruturado com structlog
- Contexto por chamada/transferência (contextvars)
- Log rotation opcional
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.types import Processor

from . import __version__

SERVICE_NAME = "callcontrol"

_JSON_FORMAT = '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Adiciona timestamp ISO."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def add_service_info(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Adiciona informações do serviço."""
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = __version__
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    json_format: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> None:
    """
    Configura logging estruturado.

    Args:
        log_level: Nível de log (DEBUG, INFO, WARNING, ERROR)
        log_dir: Diretório de logs (None = stdout apenas)
        json_format: Usar formato JSON (True para produção)
        max_bytes: Tamanho máximo do arquivo de log
        backup_count: Número de backups a manter
    """
    level = getattr(logging, log_level.upper())

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        add_timestamp,
        add_service_info,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Logging padrão (módulos do pacote usam logging.getLogger)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    if json_format:
        console_handler.setFormatter(logging.Formatter(_JSON_FORMAT))
    else:
        console_handler.setFormatter(
            logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')
        )
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path / f"{SERVICE_NAME}.log",
            maxBytes=max_bytes,
            backupCount=backup_count
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(_JSON_FORMAT))
        root_logger.addHandler(file_handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)


def configure_from_settings(settings=None) -> None:
    """Configura logging a partir de CallControlSettings."""
    from .config import get_settings

    settings = settings or get_settings()
    configure_logging(
        log_level=settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.log_json,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """
    Obtém logger com contexto.

    Uso:
        logger = get_logger(__name__)
        logger.info("message", key="value")
    """
    return structlog.get_logger(name)


class CallLogContext:
    """
    Contexto de log por chamada.

    Uso:
        with CallLogContext(call_id, transfer_id=...) as log:
            log.info("Transfer started", target=target)
    """

    def __init__(self, call_id: str, transfer_id: Optional[str] = None, **extra: Any):
        self.call_id = call_id
        self.transfer_id = transfer_id
        self.extra = extra
        self._logger = structlog.get_logger(SERVICE_NAME)
        self._tokens: Dict[str, Any] = {}
        self._start_time = datetime.now(timezone.utc)

    def __enter__(self) -> "CallLogContext":
        context = {"call_id": self.call_id, **self.extra}
        if self.transfer_id:
            context["transfer_id"] = self.transfer_id
        self._tokens = structlog.contextvars.bind_contextvars(**context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        if exc_val is not None:
            self._logger.warning(
                "Call context ended with error",
                duration_seconds=duration,
                error_type=type(exc_val).__name__,
                error_message=str(exc_val),
            )
        structlog.contextvars.reset_contextvars(**self._tokens)

    def debug(self, message: str, **kwargs):
        self._logger.debug(message, **kwargs)

    def info(self, message: str, **kwargs):
        self._logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        self._logger.error(message, **kwargs)

    def log_transfer(
        self,
        target: str,
        transfer_type: str,
        success: bool,
        error: Optional[str] = None
    ):
        """Log de transferência."""
        self._logger.info(
            "Call transfer",
            target=target,
            transfer_type=transfer_type,
            success=success,
            error=error
        )
