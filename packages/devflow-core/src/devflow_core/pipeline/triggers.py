"""
Trigger Matcher - решает, нужно ли запускать pipeline для события

Семантика:
- OR по всем триггерам pipeline
- kind триггера должен совпасть с kind события
- push / tag / pull_request / manual: glob по ref
- schedule: cron выражение; ref события - ISO-8601 timestamp тика
  (или само cron выражение, которое сработало)
- pipeline без триггеров запускается только явным ManualRunRequest
- ManualRunRequest обходит сопоставление для любого pipeline
"""

import fnmatch
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

import structlog

from devflow_core.exceptions import ConfigError
from devflow_core.models.definition import (
    ManualTrigger,
    Pipeline,
    PipelineCatalog,
    PullRequestTrigger,
    PushTrigger,
    ScheduleTrigger,
    TagTrigger,
    Trigger,
)
from devflow_core.models.events import ManualRunRequest, RunRequest, TriggerEvent

logger = structlog.get_logger(__name__)


_CRON_ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_MONTH_NAMES = {
    name: i + 1
    for i, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]
    )
}
_WEEKDAY_NAMES = {
    name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])
}

# (имя поля, min, max, словарь имен)
_CRON_FIELDS: Tuple[Tuple[str, int, int, Dict[str, int]], ...] = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day", 1, 31, {}),
    ("month", 1, 12, _MONTH_NAMES),
    ("weekday", 0, 7, _WEEKDAY_NAMES),
)

_REF_PREFIXES = {
    "push": "refs/heads/",
    "pull_request": "refs/heads/",
    "tag": "refs/tags/",
}


def _parse_cron_value(token: str, names: Dict[str, int]) -> int:
    lowered = token.lower()
    if lowered in names:
        return names[lowered]
    return int(token)


def _parse_cron_field(
    text: str, name: str, low: int, high: int, names: Dict[str, int]
) -> FrozenSet[int]:
    values = set()

    for part in text.split(","):
        if not part:
            raise ValueError(f"empty element in {name} field")

        step = 1
        base = part
        if "/" in part:
            base, step_text = part.split("/", 1)
            step = int(step_text)
            if step <= 0:
                raise ValueError(f"step must be positive in {name} field")

        if base == "*":
            start, end = low, high
        elif "-" in base:
            first, last = base.split("-", 1)
            start = _parse_cron_value(first, names)
            end = _parse_cron_value(last, names)
        else:
            start = _parse_cron_value(base, names)
            end = high if "/" in part else start

        if not (low <= start <= end <= high):
            raise ValueError(f"{name} value out of range {low}-{high}: '{part}'")

        values.update(range(start, end + 1, step))

    return frozenset(values)


class CronExpression:
    """Cron выражение из 5 полей: minute hour day month weekday"""

    def __init__(self, expression: str):
        self.expression = expression.strip()
        text = _CRON_ALIASES.get(self.expression.lower(), self.expression)
        fields = text.split()

        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have 5 fields, got {len(fields)}: '{expression}'"
            )

        parsed = []
        for field_text, (name, low, high, names) in zip(fields, _CRON_FIELDS):
            try:
                parsed.append(_parse_cron_field(field_text, name, low, high, names))
            except ValueError as e:
                raise ValueError(f"Invalid cron expression '{expression}': {e}") from e

        self.minutes, self.hours, self.days, self.months, weekdays = parsed
        # 7 и 0 - оба воскресенье
        self.weekdays = frozenset(d % 7 for d in weekdays)

        self._day_restricted = fields[2] != "*"
        self._weekday_restricted = fields[4] != "*"

    def matches(self, moment: datetime) -> bool:
        """Проверка, попадает ли момент времени в расписание"""
        if moment.minute not in self.minutes:
            return False
        if moment.hour not in self.hours:
            return False
        if moment.month not in self.months:
            return False

        day_ok = moment.day in self.days
        weekday_ok = moment.isoweekday() % 7 in self.weekdays

        # Классическая семантика cron: если ограничены оба поля - OR
        if self._day_restricted and self._weekday_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"


def _glob_error(pattern: str) -> Optional[str]:
    if not pattern or not pattern.strip():
        return "pattern cannot be empty"
    if any(ch.isspace() for ch in pattern):
        return "pattern cannot contain whitespace"
    if pattern.count("[") != pattern.count("]"):
        return "unbalanced '[' in pattern"
    return None


def trigger_pattern_error(trigger: Trigger) -> Optional[str]:
    """
    Проверка синтаксиса pattern для его kind

    Returns:
        Текст ошибки или None, если pattern корректен
    """
    if isinstance(trigger, ScheduleTrigger):
        try:
            CronExpression(trigger.pattern)
        except ValueError as e:
            return str(e)
        return None

    if isinstance(trigger, (PushTrigger, TagTrigger, PullRequestTrigger, ManualTrigger)):
        return _glob_error(trigger.pattern)

    raise TypeError(f"Unsupported trigger type: {type(trigger).__name__}")


def _normalize_ref(kind: str, ref: str) -> str:
    prefix = _REF_PREFIXES.get(kind)
    if prefix and ref.startswith(prefix):
        return ref[len(prefix):]
    return ref


def _match_schedule(pattern: str, ref: str) -> bool:
    try:
        cron = CronExpression(pattern)
    except ValueError as e:
        raise ConfigError(
            "Invalid schedule trigger", validation_errors=[str(e)]
        ) from e

    ref = ref.strip()
    if ref == cron.expression:
        return True

    # fromisoformat до Python 3.11 не принимает суффикс Z
    if ref.endswith(("Z", "z")):
        ref = ref[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(ref)
    except ValueError:
        return False
    return cron.matches(moment)


def trigger_matches(trigger: Trigger, event: TriggerEvent) -> bool:
    """Совпадает ли отдельный триггер с событием"""
    if trigger.kind != event.kind:
        return False

    if isinstance(trigger, ScheduleTrigger):
        return _match_schedule(trigger.pattern, event.ref)

    if isinstance(trigger, (PushTrigger, TagTrigger, PullRequestTrigger, ManualTrigger)):
        return fnmatch.fnmatchcase(_normalize_ref(event.kind, event.ref), trigger.pattern)

    raise TypeError(f"Unsupported trigger type: {type(trigger).__name__}")


class TriggerMatcher:
    """Сопоставление событий с триггерами pipeline"""

    def matching_triggers(
        self, pipeline: Pipeline, event: TriggerEvent
    ) -> List[Trigger]:
        """Все триггеры pipeline, совпавшие с событием"""
        return [t for t in pipeline.triggers if trigger_matches(t, event)]

    def should_run(self, pipeline: Pipeline, request: RunRequest) -> bool:
        """Решение о запуске pipeline"""
        if isinstance(request, ManualRunRequest):
            logger.debug(
                "Manual run requested", pipeline=pipeline.name, actor=request.actor
            )
            return True

        if not pipeline.triggers:
            logger.debug(
                "Pipeline has no triggers, only manual runs allowed",
                pipeline=pipeline.name,
                event_kind=request.kind,
            )
            return False

        matched = self.matching_triggers(pipeline, request)
        logger.debug(
            "Trigger matching completed",
            pipeline=pipeline.name,
            event_kind=request.kind,
            ref=request.ref,
            matched=len(matched),
        )
        return bool(matched)

    def select(self, catalog: PipelineCatalog, request: RunRequest) -> List[Pipeline]:
        """Pipeline каталога, которые должны запуститься (в порядке каталога)"""
        return [p for p in catalog.pipelines if self.should_run(p, request)]
