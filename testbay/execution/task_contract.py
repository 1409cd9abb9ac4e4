"""Task descriptor model and validation of raw queue payloads."""

from __future__ import annotations

import json
import re
from typing import Any, Literal, Mapping, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
INVALID_TASK = "INVALID_TASK"
DEFAULT_FOLDER = "all"
_SAFE_IDENTIFIER = re.compile(r"[A-Za-z0-9_.-]+")
_ENVIRONMENT_ALIASES = {
    "dev": "dev",
    "development": "dev",
    "staging": "staging",
    "prod": "prod",
    "production": "prod",
}


def is_safe_identifier(value: str) -> bool:
    """True when ``value`` can name a directory or container as-is."""

    return bool(_SAFE_IDENTIFIER.fullmatch(value)) and value not in {".", ".."}


class TaskValidationError(ValueError):
    """Base class for non-retryable payload errors."""

    code: str = INVALID_TASK

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class MalformedPayloadError(TaskValidationError):
    """Raised when the message body is not decodable JSON."""

    code = MALFORMED_PAYLOAD


class InvalidTaskError(TaskValidationError):
    """Raised when a decoded payload violates the descriptor schema."""

    code = INVALID_TASK


class TaskConfig(BaseModel):
    """Per-run configuration supplied by the task author."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    environment: Literal["dev", "staging", "prod"] = Field(..., alias="environment")
    base_url: Optional[str] = Field(None, alias="baseUrl")
    env_vars: dict[str, str] = Field(default_factory=dict, alias="envVars")

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: object) -> object:
        if isinstance(value, str):
            return _ENVIRONMENT_ALIASES.get(value.strip().lower(), value)
        return value

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("baseUrl must be a string")
        cleaned = value.strip()
        if not cleaned:
            return None
        parts = urlsplit(cleaned)
        if parts.scheme.lower() not in {"http", "https"} or not parts.netloc:
            raise ValueError("baseUrl must be an absolute http(s) URL")
        return cleaned

    @field_validator("env_vars", mode="before")
    @classmethod
    def _stringify_env_values(cls, value: object) -> object:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            return value
        normalized: dict[str, Any] = {}
        for key, raw in value.items():
            if raw is None:
                continue
            if isinstance(raw, (bool, int, float)):
                normalized[key] = str(raw).lower() if isinstance(raw, bool) else str(raw)
            else:
                normalized[key] = raw
        return normalized

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CiContext(BaseModel):
    """Pull request coordinates for CI-triggered runs."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    source: Literal["github", "gitlab", "azure", "jenkins", "webhook"] = Field(
        ..., alias="source"
    )
    repository: Optional[str] = Field(None, alias="repository")
    pr_number: Optional[int] = Field(None, alias="prNumber", gt=0)
    commit_sha: Optional[str] = Field(None, alias="commitSha")

    @field_validator("source", mode="before")
    @classmethod
    def _lower_source(cls, value: object) -> object:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("repository", "commit_sha", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @property
    def has_pull_request(self) -> bool:
        return bool(self.repository) and self.pr_number is not None


class TaskDescriptor(BaseModel):
    """One container run pulled off the work queue.

    Field order is significant: pydantic reports errors in declaration
    order, so ``taskId`` problems always surface first.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    task_id: str = Field(..., alias="taskId")
    organization_id: str = Field(..., alias="organizationId")
    image: str = Field(..., alias="image")
    command: str = Field("", alias="command")
    folder: str = Field(DEFAULT_FOLDER, alias="folder")
    config: TaskConfig = Field(..., alias="config")
    ai_analysis_enabled: bool = Field(False, alias="aiAnalysisEnabled")
    ci_context: Optional[CiContext] = Field(None, alias="ciContext")

    @field_validator("task_id", "organization_id", "image", mode="before")
    @classmethod
    def _require_non_blank(cls, value: object) -> object:
        if isinstance(value, str):
            cleaned = value.strip()
            if not cleaned:
                raise ValueError("must be a non-empty string")
            return cleaned
        return value

    @field_validator("task_id", "organization_id")
    @classmethod
    def _require_safe_identifier(cls, value: str) -> str:
        if not is_safe_identifier(value):
            raise ValueError("may only contain letters, digits, '_', '.' and '-'")
        return value

    @field_validator("command", mode="before")
    @classmethod
    def _normalize_command(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("folder", mode="before")
    @classmethod
    def _normalize_folder(cls, value: object) -> object:
        if value is None:
            return DEFAULT_FOLDER
        if isinstance(value, str):
            return value.strip().replace("\\", "/") or DEFAULT_FOLDER
        return value

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def log_context(self) -> dict[str, str]:
        return {"task_id": self.task_id, "organization_id": self.organization_id}


def _first_error(exc: ValidationError) -> InvalidTaskError:
    errors = exc.errors(include_url=False)
    if not errors:
        return InvalidTaskError("task descriptor is invalid")
    first = errors[0]
    aliases = {
        name: info.alias or name
        for model in (TaskDescriptor, TaskConfig, CiContext)
        for name, info in model.model_fields.items()
    }
    location = ".".join(str(aliases.get(str(part), part)) for part in first.get("loc", ()))
    message = str(first.get("msg", "invalid value"))
    if message.startswith("Value error, "):
        message = message[len("Value error, ") :]
    return InvalidTaskError(f"{location or 'payload'}: {message}", field=location or None)


def parse_task_descriptor(payload: bytes | bytearray | str) -> TaskDescriptor:
    """Decode and validate a raw queue message body.

    Raises ``MalformedPayloadError`` when the body is not JSON and
    ``InvalidTaskError`` when the JSON does not describe a valid task.
    """

    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        data = json.loads(text)
    except (UnicodeDecodeError, ValueError, TypeError) as exc:
        raise MalformedPayloadError(f"message is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise InvalidTaskError("payload: must be a JSON object", field=None)

    try:
        return TaskDescriptor.model_validate(data)
    except ValidationError as exc:
        raise _first_error(exc) from None


__all__ = [
    "CiContext",
    "DEFAULT_FOLDER",
    "INVALID_TASK",
    "InvalidTaskError",
    "MALFORMED_PAYLOAD",
    "MalformedPayloadError",
    "TaskConfig",
    "TaskDescriptor",
    "TaskValidationError",
    "is_safe_identifier",
    "parse_task_descriptor",
]
