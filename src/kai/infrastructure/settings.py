"""User-facing application settings persisted as YAML under the data directory.

The orchestration core only reads these; the desktop shell owns writes.
Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from kai.errors import ConfigValidationError
from kai.infrastructure.config import CONFIG_FILE, HOME_DIR
from kai.infrastructure.logger import logger


def default_base_directory() -> str:
    return str(HOME_DIR / "KaiBase")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BackendSettings(_CamelModel):
    port: int = 9900
    node_env: Literal["development", "production"] = "production"


class Neo4jSettings(_CamelModel):
    password: str = ""
    port: int = 7687


class CodeServerSettings(_CamelModel):
    password: str = ""
    port: int = 8443


class QdrantSettings(_CamelModel):
    port: int = 6333


class ServiceSettings(_CamelModel):
    backend: BackendSettings = Field(default_factory=BackendSettings)
    neo4j: Neo4jSettings = Field(default_factory=Neo4jSettings)
    code_server: CodeServerSettings = Field(default_factory=CodeServerSettings)
    qdrant: QdrantSettings = Field(default_factory=QdrantSettings)


class EnvSettings(_CamelModel):
    docker_network: str = "kai-net"
    image_name: str = "flexy-dev-sandbox:latest"
    enable_persistent_ai_sessions: bool = True
    ai_session_mode: Literal["interactive", "batch"] = "interactive"
    task_completion_timeout: int = 120000  # ms
    context_enabled: bool = True
    embedding_provider: Literal["openai", "local"] = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    auto_capture_enabled: bool = True
    extract_facts_enabled: bool = True
    user_id: int = 1000
    group_id: int = 1000


class UiSettings(_CamelModel):
    theme: Literal["light", "dark", "system"] = "system"
    start_minimized: bool = False
    minimize_to_tray: bool = True


class KaiConfig(_CamelModel):
    setup_completed: bool = False
    setup_version: str = "1.0.0"
    preferred_runtime: Literal["auto", "docker", "containerd", "lima"] = "auto"
    base_directory: str = Field(default_factory=default_base_directory)
    services: ServiceSettings = Field(default_factory=ServiceSettings)
    cloud_frontend_url: str = ""
    env: EnvSettings = Field(default_factory=EnvSettings)
    ui: UiSettings = Field(default_factory=UiSettings)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class FieldError(BaseModel):
    field: str
    message: str


class ValidationResult(BaseModel):
    valid: bool
    errors: list[FieldError] = Field(default_factory=list)


_PORT_FIELDS = (
    ("services.backend.port", ("services", "backend", "port")),
    ("services.neo4j.port", ("services", "neo4j", "port")),
    ("services.codeServer.port", ("services", "codeServer", "port")),
    ("services.qdrant.port", ("services", "qdrant", "port")),
)


def _dig(data: Any, path: tuple[str, ...]) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme) and bool(parsed.netloc or parsed.path)


class ConfigStore:
    """YAML-backed KaiConfig with validation, import and export."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or CONFIG_FILE
        self._config = self._load()

    @property
    def config_path(self) -> Path:
        return self._path

    def _load(self) -> KaiConfig:
        if not self._path.exists():
            return KaiConfig()
        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
            return KaiConfig.model_validate(raw)
        except (OSError, yaml.YAMLError, ValidationError) as err:
            logger.warning("Unreadable config file, using defaults", path=str(self._path), error=str(err))
            return KaiConfig()

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(yaml.safe_dump(self._config.to_wire(), sort_keys=False), encoding="utf-8")

    def get_config(self) -> KaiConfig:
        return self._config.model_copy(deep=True)

    def get(self, key: str) -> Any:
        return getattr(self._config, self._field_name(key))

    def set(self, key: str, value: Any) -> None:
        self.update({key: value})

    def update(self, updates: dict[str, Any]) -> None:
        """Replace top-level sections. Keys may be snake_case or camelCase."""
        data = self._config.to_wire()
        for key, value in updates.items():
            if isinstance(value, BaseModel):
                value = value.model_dump(by_alias=True, mode="json")
            data[to_camel(self._field_name(key))] = value
        self._config = KaiConfig.model_validate(data)
        self._save()

    def reset(self) -> None:
        self._config = KaiConfig()
        self._save()

    def is_setup_complete(self) -> bool:
        return self._config.setup_completed

    def mark_setup_complete(self) -> None:
        self.update({"setup_completed": True})

    @staticmethod
    def _field_name(key: str) -> str:
        if key in KaiConfig.model_fields:
            return key
        for name, info in KaiConfig.model_fields.items():
            if info.alias == key:
                return name
        raise KeyError(key)

    def validate(self, config: KaiConfig | dict[str, Any] | str | None = None) -> ValidationResult:
        """Check a candidate configuration, or the stored one when none is given."""
        explicit = config is not None
        errors: list[FieldError] = []

        if config is None:
            data: Any = self._config.to_wire()
        elif isinstance(config, KaiConfig):
            data = config.to_wire()
        elif isinstance(config, str):
            try:
                data = json.loads(config)
            except json.JSONDecodeError as err:
                return ValidationResult(valid=False, errors=[FieldError(field="json", message=str(err))])
        else:
            data = config

        if not isinstance(data, dict):
            return ValidationResult(
                valid=False, errors=[FieldError(field="config", message="Configuration must be an object")]
            )

        base_dir = data.get("baseDirectory")
        if base_dir:
            if not Path(str(base_dir)).is_absolute():
                errors.append(FieldError(field="baseDirectory", message="Base directory must be an absolute path"))
        elif explicit:
            errors.append(FieldError(field="baseDirectory", message="Base directory is required"))

        neo4j_password = _dig(data, ("services", "neo4j", "password"))
        if neo4j_password and len(str(neo4j_password)) < 8:
            errors.append(
                FieldError(field="services.neo4j.password", message="Neo4j password must be at least 8 characters")
            )

        code_password = _dig(data, ("services", "codeServer", "password"))
        if code_password and len(str(code_password)) < 6:
            errors.append(
                FieldError(
                    field="services.codeServer.password",
                    message="Code Server password must be at least 6 characters",
                )
            )

        url = data.get("cloudFrontendUrl")
        if url and not _is_valid_url(str(url)):
            errors.append(FieldError(field="cloudFrontendUrl", message="Cloud frontend URL must be a valid URL"))

        for field, path in _PORT_FIELDS:
            value = _dig(data, path)
            if value is None:
                continue
            if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= 65535:
                errors.append(FieldError(field=field, message="Port must be between 1 and 65535"))

        if not errors:
            try:
                KaiConfig.model_validate(data)
            except ValidationError as err:
                for item in err.errors():
                    errors.append(FieldError(field=".".join(str(p) for p in item["loc"]), message=item["msg"]))

        return ValidationResult(valid=not errors, errors=errors)

    def export(self) -> str:
        return json.dumps(self._config.to_wire(), indent=2)

    def import_config(self, text: str) -> None:
        result = self.validate(text)
        if not result.valid:
            raise ConfigValidationError(
                f"Invalid configuration: {', '.join(e.message for e in result.errors)}",
                {"errors": [e.model_dump() for e in result.errors]},
            )
        self._config = KaiConfig.model_validate({**self._config.to_wire(), **json.loads(text)})
        self._save()
        logger.info("Configuration imported", path=str(self._path))

    def ensure_base_directory(self) -> Path:
        if not self._config.base_directory:
            raise ConfigValidationError("Base directory not configured")
        path = Path(self._config.base_directory)
        path.mkdir(parents=True, exist_ok=True)
        return path

    @staticmethod
    def default_base_directory() -> str:
        return default_base_directory()
