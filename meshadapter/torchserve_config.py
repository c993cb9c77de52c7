"""TorchServe adapter configuration read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from meshadapter.common import (
    get_env_bool,
    get_env_float,
    get_env_int,
    get_env_string,
    secure_join,
)
from meshadapter.triton_config import ConfigError

ADAPTER_PORT_ENV = "ADAPTER_PORT"
DEFAULT_ADAPTER_PORT = 8085
RUNTIME_PORT_ENV = "RUNTIME_PORT"
DEFAULT_RUNTIME_PORT = 7071
RUNTIME_DATA_ENDPOINT_ENV = "RUNTIME_DATA_ENDPOINT"
DEFAULT_RUNTIME_DATA_ENDPOINT = "port:7070"
CONTAINER_MEM_REQ_BYTES_ENV = "CONTAINER_MEM_REQ_BYTES"
DEFAULT_CONTAINER_MEM_REQ_BYTES = -1
MEM_BUFFER_BYTES_ENV = "MEM_BUFFER_BYTES"
DEFAULT_MEM_BUFFER_BYTES = 256 * 1024 * 1024
LOADING_CONCURRENCY_ENV = "LOADING_CONCURRENCY"
DEFAULT_LOADING_CONCURRENCY = 1
LOADING_TIMEOUT_ENV = "LOADTIME_TIMEOUT"
DEFAULT_LOADING_TIMEOUT_MS = 30000
DEFAULT_MODEL_SIZE_ENV = "DEFAULT_MODELSIZE"
DEFAULT_MODEL_SIZE_IN_BYTES = 1000000
MODEL_SIZE_MULTIPLIER_ENV = "MODELSIZE_MULTIPLIER"
DEFAULT_MODEL_SIZE_MULTIPLIER = 2.75
RUNTIME_VERSION_ENV = "RUNTIME_VERSION"
DEFAULT_RUNTIME_VERSION = "v1"
LIMIT_PER_MODEL_CONCURRENCY_ENV = "LIMIT_PER_MODEL_CONCURRENCY"
DEFAULT_LIMIT_PER_MODEL_CONCURRENCY = 0
ROOT_MODEL_DIR_ENV = "ROOT_MODEL_DIR"
DEFAULT_ROOT_MODEL_DIR = "/models"
TORCHSERVE_MODEL_STORE_DIR_NAME = "_torchserve_models"
USE_EMBEDDED_PULLER_ENV = "USE_EMBEDDED_PULLER"
DEFAULT_USE_EMBEDDED_PULLER = False
REQUEST_BATCH_SIZE_ENV = "REQUEST_BATCH_SIZE"
DEFAULT_REQUEST_BATCH_SIZE = 0
MAX_BATCH_DELAY_SECS_ENV = "MAX_BATCH_DELAY_SECS"
DEFAULT_MAX_BATCH_DELAY_SECS = 0


@dataclass
class TorchServeAdapterConfiguration:
    port: int
    torchserve_management_port: int
    torchserve_inference_endpoint: str
    torchserve_container_mem_req_bytes: int
    torchserve_mem_buffer_bytes: int
    capacity_in_bytes: int
    max_loading_concurrency: int
    model_loading_timeout_ms: int
    default_model_size_in_bytes: int
    model_size_multiplier: float
    runtime_version: str
    limit_model_concurrency: int  # 0 means no limit
    model_store_dir: str
    use_embedded_puller: bool
    request_batch_size: int
    max_batch_delay_secs: int


def _int32(value: int) -> int:
    return ((value + 2**31) % 2**32) - 2**31


def _number(value) -> str:
    text = repr(value)
    return text[:-2] if text.endswith(".0") else text


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> TorchServeAdapterConfiguration:
    """Build the TorchServe adapter configuration from environment variables."""
    env = os.environ if environ is None else environ
    try:
        mem_req = get_env_int(env, CONTAINER_MEM_REQ_BYTES_ENV, DEFAULT_CONTAINER_MEM_REQ_BYTES)
        mem_buffer = get_env_int(env, MEM_BUFFER_BYTES_ENV, DEFAULT_MEM_BUFFER_BYTES)
        config = TorchServeAdapterConfiguration(
            port=get_env_int(env, ADAPTER_PORT_ENV, DEFAULT_ADAPTER_PORT),
            torchserve_management_port=get_env_int(env, RUNTIME_PORT_ENV, DEFAULT_RUNTIME_PORT),
            torchserve_inference_endpoint=get_env_string(
                env, RUNTIME_DATA_ENDPOINT_ENV, DEFAULT_RUNTIME_DATA_ENDPOINT
            ),
            torchserve_container_mem_req_bytes=mem_req,
            torchserve_mem_buffer_bytes=mem_buffer,
            capacity_in_bytes=mem_req - mem_buffer,
            max_loading_concurrency=get_env_int(env, LOADING_CONCURRENCY_ENV, DEFAULT_LOADING_CONCURRENCY),
            model_loading_timeout_ms=get_env_int(env, LOADING_TIMEOUT_ENV, DEFAULT_LOADING_TIMEOUT_MS),
            default_model_size_in_bytes=get_env_int(env, DEFAULT_MODEL_SIZE_ENV, DEFAULT_MODEL_SIZE_IN_BYTES),
            model_size_multiplier=get_env_float(env, MODEL_SIZE_MULTIPLIER_ENV, DEFAULT_MODEL_SIZE_MULTIPLIER),
            runtime_version=get_env_string(env, RUNTIME_VERSION_ENV, DEFAULT_RUNTIME_VERSION),
            limit_model_concurrency=get_env_int(
                env, LIMIT_PER_MODEL_CONCURRENCY_ENV, DEFAULT_LIMIT_PER_MODEL_CONCURRENCY
            ),
            model_store_dir="",
            use_embedded_puller=get_env_bool(env, USE_EMBEDDED_PULLER_ENV, DEFAULT_USE_EMBEDDED_PULLER),
            request_batch_size=0,
            max_batch_delay_secs=0,
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    try:
        config.model_store_dir = secure_join(
            get_env_string(env, ROOT_MODEL_DIR_ENV, DEFAULT_ROOT_MODEL_DIR),
            TORCHSERVE_MODEL_STORE_DIR_NAME,
        )
    except ValueError as exc:
        raise ConfigError(f"Could not construct torchserve model store path: {exc}") from exc

    try:
        config.request_batch_size = _int32(
            get_env_int(env, REQUEST_BATCH_SIZE_ENV, DEFAULT_REQUEST_BATCH_SIZE)
        )
        config.max_batch_delay_secs = _int32(
            get_env_int(env, MAX_BATCH_DELAY_SECS_ENV, DEFAULT_MAX_BATCH_DELAY_SECS)
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    if config.torchserve_container_mem_req_bytes < 0:
        raise ConfigError(
            f"{CONTAINER_MEM_REQ_BYTES_ENV} environment variable must be set to a positive integer, "
            f"found value {config.torchserve_container_mem_req_bytes}"
        )
    if config.model_size_multiplier <= 0:
        raise ConfigError(
            f"{MODEL_SIZE_MULTIPLIER_ENV} environment variable must be greater than 0, "
            f"found value {_number(config.model_size_multiplier)}"
        )
    return config