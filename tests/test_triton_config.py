import os

import pytest

from meshadapter.triton_config import ConfigError, config_from_env

MEM_REQ = 6 * 1024 * 1024 * 1024


def _env(**extra):
    env = {"CONTAINER_MEM_REQ_BYTES": str(MEM_REQ)}
    env.update(extra)
    return env


def test_defaults_and_capacity():
    config = config_from_env(_env())
    assert config.port == 8085
    assert config.triton_port == 8001
    assert config.capacity_in_bytes == MEM_REQ - 256 * 1024 * 1024
    assert config.model_size_multiplier == 1.25
    assert config.default_model_size_in_bytes == 1000000
    assert config.runtime_version == "v1"
    assert config.use_embedded_puller is False
    assert config.root_model_dir == os.path.join("/models", "_triton_models")


def test_overrides(tmp_path):
    config = config_from_env(
        _env(
            MODELSIZE_MULTIPLIER="1.350000",
            ROOT_MODEL_DIR=str(tmp_path),
            USE_EMBEDDED_PULLER="true",
            LIMIT_PER_MODEL_CONCURRENCY="3",
            RUNTIME_PORT="9001",
        )
    )
    assert config.model_size_multiplier == 1.35
    assert config.root_model_dir == os.path.join(str(tmp_path), "_triton_models")
    assert config.use_embedded_puller is True
    assert config.limit_model_concurrency == 3
    assert config.triton_port == 9001


def test_missing_memory_request():
    with pytest.raises(ConfigError, match="CONTAINER_MEM_REQ_BYTES"):
        config_from_env({})


def test_non_positive_multiplier():
    with pytest.raises(ConfigError, match="MODELSIZE_MULTIPLIER"):
        config_from_env(_env(MODELSIZE_MULTIPLIER="0"))


def test_invalid_integer():
    with pytest.raises(ConfigError):
        config_from_env(_env(ADAPTER_PORT="eighty"))


def test_invalid_bool():
    with pytest.raises(ConfigError):
        config_from_env(_env(USE_EMBEDDED_PULLER="maybe"))