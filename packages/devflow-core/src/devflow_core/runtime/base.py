# packages/devflow-core/src/devflow_core/runtime/base.py

"""
Контракты внешних runtime, которые вызывает engine

- ServiceRuntime: старт и остановка sidecar сервисов
- ProcessRuntime: выполнение команды шага

Реализации должны быть async. ``ServiceRuntime.stop`` идемпотентен и
вызывается в том числе для частично созданного handle из ServiceStartError.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


@dataclass
class ServiceHandle:
    """Handle запущенного сервиса"""

    name: str
    image: str
    handle_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    host_port: Optional[int] = None
    container_port: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessResult:
    """Результат выполнения процесса шага"""

    exit_status: int
    output: str = ""

    def is_success(self) -> bool:
        return self.exit_status == 0


class ServiceRuntime(ABC):
    """Runtime для sidecar сервисов"""

    @abstractmethod
    async def start(
        self,
        image: str,
        env: Mapping[str, str],
        host_port: Optional[int],
        container_port: Optional[int],
        *,
        name: str = "",
    ) -> ServiceHandle:
        """
        Старт сервиса

        Raises:
            ServiceStartError: Если сервис не стартовал; может содержать handle
        """
        pass

    @abstractmethod
    async def stop(self, handle: ServiceHandle) -> None:
        """Остановка сервиса (идемпотентно)"""
        pass


class ProcessRuntime(ABC):
    """Runtime для команд шагов"""

    @abstractmethod
    async def run(
        self, command: str, args: Mapping[str, str], working_dir: str
    ) -> ProcessResult:
        """Выполнение команды; ошибки самого runtime - исключения"""
        pass
