"""
Исключения для DevFlow engine
"""

from typing import Optional, Dict, Any, List


class DevflowError(Exception):
    """Базовое исключение для всех ошибок DevFlow"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigError(DevflowError):
    """Структурная ошибка definition tree (дубликаты, пустые оси, размер матрицы)"""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.validation_errors = validation_errors or []

    def __str__(self) -> str:
        base = super().__str__()
        if self.validation_errors:
            return base + ": " + "; ".join(self.validation_errors)
        return base


class ResolutionError(DevflowError):
    """Placeholder не найден в binding context конкретного instance"""

    def __init__(
        self,
        message: str,
        placeholder: Optional[str] = None,
        instance_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.placeholder = placeholder
        self.instance_id = instance_id


class ExecutionError(DevflowError):
    """Ошибка выполнения instance: старт сервиса, non-zero exit, ошибка runtime"""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        step_index: Optional[int] = None,
        exit_status: Optional[int] = None,
        service_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.instance_id = instance_id
        self.step_index = step_index
        self.exit_status = exit_status
        self.service_name = service_name


class ServiceStartError(DevflowError):
    """Ошибка старта сервиса в service runtime.

    ``handle`` заполняется, если runtime успел частично создать ресурс:
    engine обязан вызвать для него ``stop``.
    """

    def __init__(
        self,
        message: str,
        handle: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.handle = handle


class CancellationError(DevflowError):
    """Instance отменен намеренно. Это не дефект, а терминальное состояние."""

    def __init__(
        self,
        message: str = "Run cancelled",
        instance_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.instance_id = instance_id


class YAMLDefinitionError(DevflowError):
    """Ошибка загрузки YAML definition"""

    pass


# Utility функции для создания исключений


def create_config_error(message: str, errors: List[str]) -> ConfigError:
    """Создание ConfigError с детальным списком нарушений"""
    return ConfigError(
        message, validation_errors=errors, details={"error_count": len(errors)}
    )


def wrap_execution_error(
    instance_id: str, error: Exception, step_index: Optional[int] = None
) -> ExecutionError:
    """Оборачивание ошибки runtime в ExecutionError instance"""
    return ExecutionError(
        f"Runtime error in '{instance_id}': {error}",
        instance_id=instance_id,
        step_index=step_index,
        details={"error_type": type(error).__name__},
    )
