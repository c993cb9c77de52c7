"""Shared types, constants and helpers for the model runtime adapters."""

from __future__ import annotations

import enum
import json
import logging
import os
import posixpath
import shutil
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

logger = logging.getLogger(__name__)

TRITON_SERVICE_NAME = "inference.GRPCInferenceService"
MODEL_TYPE_JSON_KEY = "model_type"
TRITON_MODEL_SUBDIR = "_triton_models"
TRITON_REPOSITORY_CONFIG_FILENAME = "config.pbtxt"
TENSORFLOW_SAVED_MODEL_DIR_NAME = "model.savedmodel"

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class StatusCode(enum.IntEnum):
    """Canonical RPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class _StatusError(Exception):
    def __init__(self, code: StatusCode | int = StatusCode.UNKNOWN, message: str = "") -> None:
        super().__init__(message)
        self.code = StatusCode(code)
        self.message = message


class RuntimeCallError(_StatusError):
    """A call to the model server runtime failed with a status code."""


class AdapterError(_StatusError):
    """An adapter operation failed; carries the status code to report."""


@dataclass(frozen=True)
class LoadModelRequest:
    model_id: str
    model_path: str = ""
    model_type: str = ""
    model_key: str = ""


@dataclass(frozen=True)
class LoadModelResponse:
    size_in_bytes: int = 0
    max_concurrency: int = 0


@dataclass(frozen=True)
class ModelSizeResponse:
    size_in_bytes: int = 0


class RuntimeState(enum.Enum):
    STARTING = "STARTING"
    READY = "READY"
    FAILING = "FAILING"


@dataclass(frozen=True)
class MethodInfo:
    id_injection_path: tuple[int, ...] = ()


@dataclass
class RuntimeStatusResponse:
    status: RuntimeState = RuntimeState.STARTING
    capacity_in_bytes: int = 0
    max_loading_concurrency: int = 0
    model_loading_timeout_ms: int = 0
    default_model_size_in_bytes: int = 0
    runtime_version: str = ""
    limit_model_concurrency: bool = False
    method_infos: dict[str, MethodInfo] = field(default_factory=dict)


def secure_join(base, *args) -> str:
    """Join path components onto base without ever leaving it lexically."""
    path = os.fspath(base)
    for part in args:
        part = os.fspath(part)
        if "\0" in part or "\0" in path:
            raise ValueError(f"path component contains a NUL byte: {part!r}")
        cleaned = posixpath.normpath("/" + part.replace(os.sep, "/")).lstrip("/")
        if cleaned:
            path = os.path.join(path, cleaned)
    return os.path.normpath(path)


def get_env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    """Read an integer from the environment, or the default when unset."""
    if key not in environ:
        return default
    value = environ[key]
    try:
        return int(value.strip(), 10)
    except ValueError:
        raise ValueError(f"{key} environment variable must be an integer, found value {value!r}") from None


def get_env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    """Read a float from the environment, or the default when unset."""
    if key not in environ:
        return default
    value = environ[key]
    try:
        return float(value.strip())
    except ValueError:
        raise ValueError(f"{key} environment variable must be a number, found value {value!r}") from None


def get_env_bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    """Read a boolean from the environment, or the default when unset."""
    if key not in environ:
        return default
    value = environ[key].strip()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{key} environment variable must be a boolean, found value {value!r}")


def get_env_string(environ: Mapping[str, str], key: str, default: str) -> str:
    """Read a string from the environment, or the default when unset."""
    return environ[key] if key in environ else default


def get_model_type(request: LoadModelRequest) -> str:
    """Model type from the request's model key JSON, falling back to its model_type."""
    try:
        model_key = json.loads(request.model_key)
    except (ValueError, TypeError) as exc:
        logger.info(
            "Model type falls back to request model_type as model_key is not valid JSON "
            "(model_type=%r, model_key=%r, error=%s)",
            request.model_type, request.model_key, exc,
        )
        return request.model_type
    if not isinstance(model_key, dict):
        if model_key is not None:
            logger.info("Model type falls back to request model_type as model_key is not a JSON object")
            return request.model_type
        model_key = {}
    value = model_key.get(MODEL_TYPE_JSON_KEY)
    if value is None:
        logger.info(
            "Model type falls back to request model_type as model_key has no %r attribute",
            MODEL_TYPE_JSON_KEY,
        )
        return request.model_type
    if isinstance(value, dict):
        name = value.get("name")
        if isinstance(name, str):
            return name
        logger.info("Model type falls back to request model_type as the model_type name is not a string")
        return request.model_type
    if isinstance(value, str):
        return value
    logger.info("Model type falls back to request model_type as model_type is neither a string nor an object")
    return request.model_type


def calc_mem_capacity(model_key: str, default_size: int, multiplier: float) -> int:
    """Estimated memory for a model: disk size from the model key times the multiplier."""
    try:
        key = json.loads(model_key)
    except (ValueError, TypeError):
        return default_size
    if not isinstance(key, dict):
        return default_size
    disk_size = key.get("disk_size_bytes")
    if isinstance(disk_size, bool) or not isinstance(disk_size, (int, float)) or disk_size <= 0:
        return default_size
    return int(disk_size * multiplier)


def clear_directory_contents(
    directory, keep: Optional[Callable[[os.DirEntry], bool]] = None
) -> None:
    """Remove every entry of a directory, except those for which keep returns true."""
    try:
        entries = list(os.scandir(directory))
    except FileNotFoundError:
        return
    for entry in entries:
        if keep is not None and keep(entry):
            continue
        if entry.is_dir(follow_symlinks=False):
            shutil.rmtree(entry.path)
        else:
            os.unlink(entry.path)