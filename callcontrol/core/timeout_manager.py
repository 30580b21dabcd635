"""
TimeoutManager - Tarefas atrasadas canceláveis.

Usado pelo TransferController para limpar o registro de transferência
após o atraso de conclusão/cancelamento. Cada tarefa tem nome; agendar
de novo com o mesmo nome cancela a anterior.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTask:
    """Representa uma tarefa agendada"""
    name: str
    seconds: float
    started_at: float
    deadline: float
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    cancelled: bool = False


class TimeoutManager:
    """
    Gerenciador de tarefas atrasadas.

    Funcionalidades:
    - schedule(name, seconds, callback): agenda callback (sync ou async)
    - cancel(name) / cancel_all(): cancela de fato a task asyncio
    - get_active_timeouts(): tracking para debug

    Deve ser fechado junto com o dono (cancel_all) para não mutar
    estado depois do teardown.
    """

    def __init__(self, owner: str = "default"):
        self.owner = owner
        self._scheduled: Dict[str, ScheduledTask] = {}

    def schedule(
        self,
        name: str,
        seconds: float,
        callback: Callable[[], Any],
    ) -> ScheduledTask:
        """
        Agenda callback para daqui a `seconds`.

        Requer loop asyncio em execução.

        Args:
            name: Nome da tarefa (substitui agendamento anterior com o mesmo nome)
            seconds: Atraso em segundos
            callback: Função sync ou async
        """
        self.cancel(name)

        started_at = time.monotonic()
        entry = ScheduledTask(
            name=name,
            seconds=seconds,
            started_at=started_at,
            deadline=started_at + seconds,
        )

        async def runner() -> None:
            await asyncio.sleep(seconds)
            # Sai do tracking antes do callback para que ele possa reagendar
            if self._scheduled.get(name) is entry:
                del self._scheduled[name]
            try:
                result = callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    f"⏱️ [TIMEOUT_MGR] Callback '{name}' failed: {e}",
                    extra={"owner": self.owner, "timeout_name": name},
                    exc_info=True
                )

        entry.task = asyncio.get_running_loop().create_task(runner())
        self._scheduled[name] = entry

        logger.debug(
            f"⏱️ [TIMEOUT_MGR] Scheduled: {name} ({seconds}s)",
            extra={"owner": self.owner, "timeout_name": name, "timeout_seconds": seconds}
        )
        return entry

    def cancel(self, name: str) -> bool:
        """
        Cancela tarefa agendada.

        Returns:
            True se havia tarefa pendente
        """
        entry = self._scheduled.pop(name, None)
        if entry is None:
            return False

        entry.cancelled = True
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()

        logger.debug(
            f"⏱️ [TIMEOUT_MGR] Cancelled: {name}",
            extra={"owner": self.owner, "timeout_name": name}
        )
        return True

    def cancel_all(self) -> int:
        """
        Cancela todas as tarefas pendentes.

        Returns:
            Número de tarefas canceladas
        """
        count = 0
        for name in list(self._scheduled):
            if self.cancel(name):
                count += 1

        if count > 0:
            logger.info(
                f"Cancelled {count} scheduled tasks",
                extra={"owner": self.owner}
            )
        return count

    def is_scheduled(self, name: str) -> bool:
        return name in self._scheduled

    def get_active_timeouts(self) -> List[Dict[str, Any]]:
        """Retorna lista de tarefas pendentes para debug"""
        now = time.monotonic()
        return [
            {
                "name": t.name,
                "seconds": t.seconds,
                "remaining": max(0, t.deadline - now),
                "elapsed": now - t.started_at,
                "cancelled": t.cancelled,
            }
            for t in self._scheduled.values()
        ]
