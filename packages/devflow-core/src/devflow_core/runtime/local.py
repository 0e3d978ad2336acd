"""
Локальные реализации runtime

- SubprocessRuntime: выполняет команды шагов через shell
- InProcessServiceRuntime: только учет сервисов, контейнеры не создаются
- DryRunProcessRuntime: ничего не выполняет, возвращает успех
"""

import asyncio
import os
import re
import signal
from typing import Dict, List, Mapping, Optional, Tuple

import structlog

from devflow_core.runtime.base import (
    ProcessResult,
    ProcessRuntime,
    ServiceHandle,
    ServiceRuntime,
)

logger = structlog.get_logger(__name__)

ARG_ENV_PREFIX = "DEVFLOW_ARG_"


def args_to_env(args: Mapping[str, str]) -> Dict[str, str]:
    """Аргументы шага как переменные окружения DEVFLOW_ARG_<NAME>"""
    return {
        ARG_ENV_PREFIX + re.sub(r"[^A-Za-z0-9_]", "_", name).upper(): value
        for name, value in args.items()
    }


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """SIGKILL всей группе процессов шага: shell и все, что он запустил"""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class SubprocessRuntime(ProcessRuntime):
    """Выполнение шагов локальными процессами

    Каждый шаг стартует в своей session, поэтому при отмене завершается
    вся группа процессов, а не только shell.
    """

    def __init__(self, inherit_env: bool = True):
        self.inherit_env = inherit_env

    async def run(
        self, command: str, args: Mapping[str, str], working_dir: str
    ) -> ProcessResult:
        env = dict(os.environ) if self.inherit_env else {}
        env.update(args_to_env(args))

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=working_dir,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )

        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            # Отмена шага: процесс не должен пережить instance
            _kill_process_group(process)
            await process.wait()
            raise

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        logger.debug(
            "Process finished", command=command, exit_status=process.returncode
        )
        return ProcessResult(exit_status=process.returncode, output=output)


class InProcessServiceRuntime(ServiceRuntime):
    """Service runtime без контейнеров: ведет учет запущенных handle"""

    def __init__(self):
        self._active: Dict[str, ServiceHandle] = {}

    @property
    def active_handles(self) -> List[ServiceHandle]:
        return list(self._active.values())

    async def start(
        self,
        image: str,
        env: Mapping[str, str],
        host_port: Optional[int],
        container_port: Optional[int],
        *,
        name: str = "",
    ) -> ServiceHandle:
        handle = ServiceHandle(
            name=name or image,
            image=image,
            host_port=host_port,
            container_port=container_port,
            metadata={"env_keys": sorted(env)},
        )
        self._active[handle.handle_id] = handle
        logger.info(
            "Service registered (no container runtime)",
            service=handle.name,
            image=image,
            host_port=host_port,
            container_port=container_port,
        )
        return handle

    async def stop(self, handle: ServiceHandle) -> None:
        if self._active.pop(handle.handle_id, None) is not None:
            logger.info("Service released", service=handle.name)


class DryRunProcessRuntime(ProcessRuntime):
    """Ничего не выполняет, запоминает вызовы"""

    def __init__(self):
        self.invocations: List[Tuple[str, Dict[str, str], str]] = []

    async def run(
        self, command: str, args: Mapping[str, str], working_dir: str
    ) -> ProcessResult:
        self.invocations.append((command, dict(args), working_dir))
        return ProcessResult(exit_status=0, output=f"[dry-run] {command}")
