"""
Общие fixtures и fake runtimes для тестов engine
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest

from devflow_core.exceptions import ServiceStartError
from devflow_core.models import Pipeline
from devflow_core.observability import MetricsCollector
from devflow_core.pipeline import Engine
from devflow_core.runtime import (
    ProcessResult,
    ProcessRuntime,
    ServiceHandle,
    ServiceRuntime,
)


class RecordingServiceRuntime(ServiceRuntime):
    """Service runtime, записывающий старты и остановки"""

    def __init__(self):
        self.events: List[Tuple[str, str]] = []
        self.active: Dict[str, ServiceHandle] = {}
        self.started: List[ServiceHandle] = []
        self.fail_images: Dict[str, bool] = {}
        self.fail_on_stop = False

    def fail(self, image: str, partial: bool = False) -> None:
        """Старт образа будет падать; partial - с частично созданным handle"""
        self.fail_images[image] = partial

    async def start(
        self,
        image: str,
        env: Mapping[str, str],
        host_port: Optional[int],
        container_port: Optional[int],
        *,
        name: str = "",
    ) -> ServiceHandle:
        await asyncio.sleep(0)
        handle = ServiceHandle(
            name=name,
            image=image,
            host_port=host_port,
            container_port=container_port,
            metadata={"env": dict(env)},
        )

        if image in self.fail_images:
            self.events.append(("start_failed", name))
            if self.fail_images[image]:
                self.active[handle.handle_id] = handle
                raise ServiceStartError(f"Image '{image}' crashed", handle=handle)
            raise ServiceStartError(f"Image '{image}' not found")

        self.events.append(("start", name))
        self.active[handle.handle_id] = handle
        self.started.append(handle)
        return handle

    async def stop(self, handle: ServiceHandle) -> None:
        self.events.append(("stop", handle.name))
        self.active.pop(handle.handle_id, None)
        if self.fail_on_stop:
            raise RuntimeError(f"Cannot stop '{handle.name}'")


class ScriptedProcessRuntime(ProcessRuntime):
    """
    Process runtime с управляемым поведением

    - exit_codes: команда -> код выхода (по умолчанию 0)
    - errors: команда -> исключение runtime
    - gates: команда ждет asyncio.Event перед завершением
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: List[str] = []
        self.call_args: Dict[str, Dict[str, str]] = {}
        self.working_dirs: List[str] = []
        self.exit_codes: Dict[str, int] = {}
        self.errors: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.cancelled: List[str] = []
        self._started: Dict[str, asyncio.Event] = {}
        self.running = 0
        self.peak = 0

    def fail(self, command: str, exit_status: int = 1) -> None:
        self.exit_codes[command] = exit_status

    def raise_on(self, command: str, error: Exception) -> None:
        self.errors[command] = error

    def gate(self, command: str) -> asyncio.Event:
        """Команда не завершится, пока event не будет установлен"""
        return self.gates.setdefault(command, asyncio.Event())

    def started(self, command: str) -> asyncio.Event:
        """Event, устанавливаемый в момент старта команды"""
        return self._started.setdefault(command, asyncio.Event())

    async def run(
        self, command: str, args: Mapping[str, str], working_dir: str
    ) -> ProcessResult:
        self.calls.append(command)
        self.call_args[command] = dict(args)
        self.working_dirs.append(working_dir)
        self.running += 1
        self.peak = max(self.peak, self.running)
        self.started(command).set()

        try:
            await asyncio.sleep(self.delay)
            gate = self.gates.get(command)
            if gate is not None:
                await gate.wait()
            if command in self.errors:
                raise self.errors[command]
            exit_status = self.exit_codes.get(command, 0)
            return ProcessResult(exit_status=exit_status, output=f"ran: {command}")
        except asyncio.CancelledError:
            self.cancelled.append(command)
            raise
        finally:
            self.running -= 1


def build_pipeline(data: Dict[str, Any]) -> Pipeline:
    """Pipeline из словаря (та же форма, что и в YAML)"""
    return Pipeline.model_validate(data)


def job(name: str, *commands: str, **extra: Any) -> Dict[str, Any]:
    """Сокращение для job с run-шагами"""
    data: Dict[str, Any] = {
        "name": name,
        "steps": [{"kind": "run", "command": c} for c in commands],
    }
    data.update(extra)
    return data


@pytest.fixture
def service_runtime() -> RecordingServiceRuntime:
    return RecordingServiceRuntime()


@pytest.fixture
def process_runtime() -> ScriptedProcessRuntime:
    return ScriptedProcessRuntime()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def engine(service_runtime, process_runtime, metrics) -> Engine:
    return Engine(service_runtime, process_runtime, metrics=metrics)
