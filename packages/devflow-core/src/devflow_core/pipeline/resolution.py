"""
Resolution Engine - подстановка matrix переменных

Placeholder: ``${name}`` или ``${matrix.name}``. ``$${name}`` - экранирование,
дает литерал ``${name}``. Неизвестное имя -> ResolutionError для конкретного
instance. Разрешение чистое: каждый вызов заново читает definition, ничего
не кэшируется между instances.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from devflow_core.exceptions import ResolutionError
from devflow_core.models.definition import RunStep, ScriptStep, Service, Step

_PLACEHOLDER = re.compile(
    r"\$(?P<escape>\$?)\{\s*(?:matrix\.)?(?P<name>[A-Za-z_][A-Za-z0-9_.-]*)\s*\}"
)


@dataclass(frozen=True)
class ResolvedService:
    """Сервис с подставленными значениями"""

    name: str
    image: str
    env: Dict[str, str] = field(default_factory=dict)
    host_port: Optional[int] = None
    container_port: Optional[int] = None


@dataclass(frozen=True)
class ResolvedStep:
    """Шаг с подставленными command и args"""

    index: int
    kind: str
    command: str
    args: Dict[str, str] = field(default_factory=dict)


def find_placeholders(template: str) -> List[str]:
    """Имена всех (неэкранированных) placeholder в строке"""
    return [
        match.group("name")
        for match in _PLACEHOLDER.finditer(template)
        if not match.group("escape")
    ]


def resolve(
    template: str,
    bindings: Mapping[str, str],
    instance_id: Optional[str] = None,
    source: Optional[str] = None,
) -> str:
    """
    Подстановка значений в строку

    Args:
        template: Исходная строка
        bindings: Binding context instance (axis name -> value)
        instance_id: Identity instance для сообщения об ошибке
        source: Где встретилась строка (для сообщения об ошибке)

    Raises:
        ResolutionError: Если placeholder ссылается на неизвестное имя
    """

    def replace(match: "re.Match[str]") -> str:
        if match.group("escape"):
            return match.group(0)[1:]

        name = match.group("name")
        if name not in bindings:
            where = f" in {source}" if source else ""
            raise ResolutionError(
                f"Unresolved placeholder '${{{name}}}'{where}",
                placeholder=name,
                instance_id=instance_id,
                details={"instance": instance_id, "available": sorted(bindings)},
            )
        return str(bindings[name])

    return _PLACEHOLDER.sub(replace, template)


def resolve_service(
    service: Service, bindings: Mapping[str, str], instance_id: Optional[str] = None
) -> ResolvedService:
    """Разрешение image и env сервиса"""
    where = f"service '{service.name}'"
    return ResolvedService(
        name=service.name,
        image=resolve(service.image, bindings, instance_id, f"{where} image"),
        env={
            env.name: resolve(env.value, bindings, instance_id, f"{where} env {env.name}")
            for env in service.env
        },
        host_port=service.host_port,
        container_port=service.container_port,
    )


def _invocation(step: Step, command: str) -> str:
    if isinstance(step, ScriptStep):
        return f"{step.shell} {command}"
    if isinstance(step, RunStep):
        return command
    raise TypeError(f"Unsupported step type: {type(step).__name__}")


def resolve_step(
    step: Step,
    index: int,
    bindings: Mapping[str, str],
    instance_id: Optional[str] = None,
) -> ResolvedStep:
    """Разрешение command и args шага; script оборачивается интерпретатором"""
    where = f"step {index}"
    command = resolve(step.command, bindings, instance_id, f"{where} command")
    return ResolvedStep(
        index=index,
        kind=step.kind,
        command=_invocation(step, command),
        args={
            arg.name: resolve(arg.value, bindings, instance_id, f"{where} arg {arg.name}")
            for arg in step.args
        },
    )
