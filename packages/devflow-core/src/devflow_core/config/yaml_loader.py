# packages/devflow-core/src/devflow_core/config/yaml_loader.py

"""
YAML Definition Loader

Десериализует уже структурированное definition tree из YAML в frozen
pydantic модели. Это не DSL-парсер: документ описывает дерево данными.

Поддерживаемые формы документа:
- ``pipelines: [...]`` - каталог из нескольких pipeline
- ``pipeline: {...}`` - один pipeline
- pipeline в корне документа (``name``, ``stages``, ...)

Опциональная секция ``config:`` разбирается в RunConfig.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
import yaml
from pydantic import ValidationError

from devflow_core.config.models import RunConfig
from devflow_core.exceptions import YAMLDefinitionError
from devflow_core.models.definition import Pipeline, PipelineCatalog

logger = structlog.get_logger(__name__)

_SERVICE_KEYS = ("config",)


class YAMLDefinitionLoader:
    """
    Загрузчик YAML definition файлов

    Обеспечивает:
    - Парсинг YAML (safe_load)
    - Кэш по mtime файла
    - Валидацию схемы через pydantic
    """

    def __init__(self, base_path: Optional[Path] = None):
        self.base_path = Path(base_path) if base_path else Path.cwd()

        # Кэш для загруженных файлов
        self._file_cache: Dict[str, Tuple[Any, float]] = {}

        self.logger = structlog.get_logger(component="yaml_definition_loader")

    def _resolve_path(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        if not path.is_absolute():
            path = self.base_path / path
        return path

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """Загрузка YAML файла"""
        if not file_path.exists():
            raise YAMLDefinitionError(f"Definition file not found: {file_path}")

        cache_key = str(file_path.absolute())
        try:
            file_stat = file_path.stat()

            if cache_key in self._file_cache:
                cached_data, cached_mtime = self._file_cache[cache_key]
                if cached_mtime >= file_stat.st_mtime:
                    return cached_data

            with open(file_path, "r", encoding="utf-8") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise YAMLDefinitionError(f"Failed to read {file_path}: {e}") from e

        data = self._parse(content, source=str(file_path))
        self._file_cache[cache_key] = (data, file_stat.st_mtime)
        return data

    @staticmethod
    def _parse(content: str, source: str) -> Dict[str, Any]:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise YAMLDefinitionError(f"Invalid YAML syntax in {source}: {e}") from e

        if data is None:
            raise YAMLDefinitionError(f"Definition document is empty: {source}")
        if not isinstance(data, dict):
            raise YAMLDefinitionError(
                f"Definition document must be a mapping, got {type(data).__name__}"
            )
        return data

    @staticmethod
    def _extract_pipelines(document: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Извлечение сырых pipeline из документа"""
        if "pipelines" in document:
            pipelines = document["pipelines"]
            if not isinstance(pipelines, list):
                raise YAMLDefinitionError("'pipelines' must be a list")
            return pipelines

        if "pipeline" in document:
            return [document["pipeline"]]

        if "name" in document:
            return [{k: v for k, v in document.items() if k not in _SERVICE_KEYS}]

        raise YAMLDefinitionError(
            "Document must contain 'pipelines', 'pipeline' or a pipeline mapping"
        )

    def _build_catalog(self, document: Dict[str, Any]) -> PipelineCatalog:
        raw_pipelines = self._extract_pipelines(document)
        pipelines = []

        for i, raw in enumerate(raw_pipelines):
            try:
                pipelines.append(Pipeline.model_validate(raw))
            except ValidationError as e:
                name = raw.get("name") if isinstance(raw, dict) else None
                raise YAMLDefinitionError(
                    f"Invalid pipeline definition at index {i}"
                    + (f" ('{name}')" if name else "")
                    + f": {e}"
                ) from e

        return PipelineCatalog(pipelines=tuple(pipelines))

    def load_catalog(self, path: Union[str, Path]) -> PipelineCatalog:
        """
        Загрузка каталога pipeline из YAML файла

        Args:
            path: Путь к YAML файлу

        Returns:
            Объект PipelineCatalog

        Raises:
            YAMLDefinitionError: При ошибках загрузки или валидации схемы
        """
        file_path = self._resolve_path(path)
        self.logger.info("Loading pipeline definitions", path=str(file_path))

        try:
            document = self._load_yaml_file(file_path)
            catalog = self._build_catalog(document)
        except YAMLDefinitionError as e:
            self.logger.error(
                "Failed to load pipeline definitions",
                error=str(e),
                path=str(file_path),
            )
            raise

        self.logger.info(
            "Pipeline definitions loaded",
            path=str(file_path),
            pipelines=list(catalog.names),
        )
        return catalog

    def load_pipeline(
        self, path: Union[str, Path], name: Optional[str] = None
    ) -> Pipeline:
        """
        Загрузка одного pipeline

        Если ``name`` не указан, файл должен содержать ровно один pipeline.
        """
        catalog = self.load_catalog(path)

        if name is not None:
            pipeline = catalog.get(name)
            if pipeline is None:
                raise YAMLDefinitionError(
                    f"Pipeline '{name}' not found, available: {list(catalog.names)}"
                )
            return pipeline

        if len(catalog.pipelines) != 1:
            raise YAMLDefinitionError(
                f"Expected exactly one pipeline, found {len(catalog.pipelines)}; "
                "select one by name"
            )
        return catalog.pipelines[0]

    def load_run_config(self, path: Union[str, Path]) -> Optional[RunConfig]:
        """Загрузка секции ``config:`` (None если ее нет)"""
        document = self._load_yaml_file(self._resolve_path(path))
        raw = document.get("config")
        if raw is None:
            return None
        try:
            return RunConfig.model_validate(raw)
        except ValidationError as e:
            raise YAMLDefinitionError(f"Invalid run config: {e}") from e

    def load_from_string(self, content: str) -> PipelineCatalog:
        """Загрузка каталога из YAML строки"""
        document = self._parse(content, source="<string>")
        return self._build_catalog(document)


# Утилитарные функции


def load_catalog(
    path: Union[str, Path], base_path: Optional[Path] = None
) -> PipelineCatalog:
    """Быстрая загрузка каталога pipeline"""
    return YAMLDefinitionLoader(base_path=base_path).load_catalog(path)


def load_pipeline(
    path: Union[str, Path],
    name: Optional[str] = None,
    base_path: Optional[Path] = None,
) -> Pipeline:
    """Быстрая загрузка одного pipeline"""
    return YAMLDefinitionLoader(base_path=base_path).load_pipeline(path, name)
