import os
from dataclasses import replace

import pytest

from meshadapter.common import (
    AdapterError,
    LoadModelRequest,
    MethodInfo,
    RuntimeCallError,
    RuntimeState,
    StatusCode,
)
from meshadapter.modelconfig import parse_model_config
from meshadapter.triton_config import config_from_env
from meshadapter.triton_server import TritonAdapterServer

SIX_GB = 6 * 1024 * 1024 * 1024
MEM_BUFFER = 256 * 1024 * 1024


class FakeTriton:
    def __init__(self):
        self.loaded = []
        self.unloaded = []
        self.ready = True
        self.index = []
        self.version = "2.20.0"
        self.errors = {}

    def _maybe_fail(self, call):
        if call in self.errors:
            raise self.errors[call]

    def repository_model_load(self, model_name):
        self._maybe_fail("load")
        self.loaded.append(model_name)

    def repository_model_unload(self, model_name):
        self._maybe_fail("unload")
        self.unloaded.append(model_name)

    def server_ready(self):
        self._maybe_fail("ready")
        return self.ready

    def repository_index(self, ready):
        self._maybe_fail("index")
        return list(self.index)

    def server_metadata(self):
        self._maybe_fail("metadata")
        return self.version


def make_config(tmp_path, **extra_env):
    env = {
        "CONTAINER_MEM_REQ_BYTES": str(SIX_GB),
        "MODELSIZE_MULTIPLIER": "1.350000",
        "ROOT_MODEL_DIR": str(tmp_path),
    }
    env.update(extra_env)
    return config_from_env(env)


def make_tfmnist(tmp_path):
    source = tmp_path / "tfmnist"
    saved = source / "1" / "model.savedmodel"
    saved.mkdir(parents=True)
    (saved / "saved_model.pb").write_bytes(b"")
    (source / "config.pbtxt").write_text(
        'name: "tfmnist"\nplatform: "tensorflow_savedmodel"\nmax_batch_size: 1\n'
    )
    return source


@pytest.fixture
def setup(tmp_path):
    client = FakeTriton()
    server = TritonAdapterServer(make_config(tmp_path), client)
    return server, client, tmp_path


def test_adapter_lifecycle(setup):
    server, client, tmp_path = setup
    source = make_tfmnist(tmp_path)

    status = server.runtime_status()
    assert status.status == RuntimeState.READY
    assert status.capacity_in_bytes == SIX_GB - MEM_BUFFER

    resp = server.load_model(
        LoadModelRequest(
            model_id="tfmnist", model_type="TensorFlow", model_path=str(source), model_key="{}"
        )
    )
    assert resp.size_in_bytes == 1000000
    assert client.loaded == ["tfmnist"]

    model_dir = tmp_path / "_triton_models" / "tfmnist" / "1" / "model.savedmodel"
    assert model_dir.exists()
    config_file = tmp_path / "_triton_models" / "tfmnist" / "config.pbtxt"
    assert config_file.exists()
    assert parse_model_config(config_file.read_text()).name == ""

    resp = server.load_model(
        LoadModelRequest(
            model_id="tfmnist",
            model_path=str(source),
            model_type="invalid",
            model_key='{"storage_key": "myStorage", "bucket": "bucket1", '
            '"disk_size_bytes": 54321, "model_type": {"name": "tensorflow", "version": "1.5"}}',
        )
    )
    assert resp.size_in_bytes == 73333

    server.unload_model("tfmnist")
    assert client.unloaded == ["tfmnist"]
    assert not (tmp_path / "_triton_models" / "tfmnist").exists()


def test_runtime_status_not_ready(setup):
    server, client, _ = setup
    client.ready = False
    client.index = ["leftover"]
    status = server.runtime_status()
    assert status.status == RuntimeState.STARTING
    assert client.unloaded == []


def test_runtime_status_ready_call_fails(setup):
    server, client, _ = setup
    client.errors["ready"] = RuntimeCallError(StatusCode.UNAVAILABLE, "down")
    assert server.runtime_status().status == RuntimeState.STARTING


def test_runtime_status_index_fails(setup):
    server, client, _ = setup
    client.errors["index"] = RuntimeCallError(StatusCode.INTERNAL, "boom")
    assert server.runtime_status().status == RuntimeState.STARTING


def test_runtime_status_unload_fails(setup):
    server, client, _ = setup
    client.index = ["a"]
    client.errors["unload"] = RuntimeCallError(StatusCode.INTERNAL, "boom")
    assert server.runtime_status().status == RuntimeState.STARTING


def test_runtime_status_clears_models_and_reports(setup):
    server, client, tmp_path = setup
    client.index = ["a", "b"]
    root = tmp_path / "_triton_models"
    (root / "stale").mkdir(parents=True)
    (root / "stale" / "file").write_text("x")
    (root / "loose").write_text("y")

    status = server.runtime_status()
    assert status.status == RuntimeState.READY
    assert client.unloaded == ["a", "b"]
    assert list(root.iterdir()) == []
    assert status.runtime_version == "2.20.0"
    assert server.config.runtime_version == "2.20.0"
    assert status.max_loading_concurrency == 1
    assert status.model_loading_timeout_ms == 30000
    assert status.default_model_size_in_bytes == 1000000
    assert status.limit_model_concurrency is False
    assert status.method_infos == {
        "inference.GRPCInferenceService/ModelInfer": MethodInfo((1,)),
        "inference.GRPCInferenceService/ModelMetadata": MethodInfo((1,)),
    }


def test_runtime_status_metadata_failure_keeps_version(setup):
    server, client, _ = setup
    client.errors["metadata"] = RuntimeCallError(StatusCode.UNAVAILABLE, "no")
    status = server.runtime_status()
    assert status.status == RuntimeState.READY
    assert status.runtime_version == "v1"


def test_runtime_status_failing_when_dir_cannot_be_cleared(tmp_path):
    client = FakeTriton()
    server = TritonAdapterServer(make_config(tmp_path), client)
    (tmp_path / "_triton_models").write_text("not a directory")
    assert server.runtime_status().status == RuntimeState.FAILING


def test_limit_concurrency(tmp_path):
    client = FakeTriton()
    config = make_config(tmp_path, LIMIT_PER_MODEL_CONCURRENCY="3")
    server = TritonAdapterServer(config, client)
    source = make_tfmnist(tmp_path)
    resp = server.load_model(
        LoadModelRequest(model_id="m", model_type="tensorflow", model_path=str(source))
    )
    assert resp.max_concurrency == 3
    assert server.runtime_status().limit_model_concurrency is True


def test_load_model_runtime_error(setup):
    server, client, tmp_path = setup
    source = make_tfmnist(tmp_path)
    client.errors["load"] = RuntimeCallError(StatusCode.UNAVAILABLE, "gone")
    with pytest.raises(AdapterError) as info:
        server.load_model(
            LoadModelRequest(model_id="m", model_type="tensorflow", model_path=str(source))
        )
    assert info.value.code == StatusCode.UNAVAILABLE
    assert "Triton runtime error" in info.value.message


def test_load_model_missing_path(setup):
    server, client, tmp_path = setup
    with pytest.raises(AdapterError) as info:
        server.load_model(
            LoadModelRequest(
                model_id="m", model_type="onnx", model_path=str(tmp_path / "missing")
            )
        )
    assert info.value.code == StatusCode.UNKNOWN
    assert "adapter error" in info.value.message
    assert client.loaded == []


def test_unload_not_found_still_removes_files(setup):
    server, client, tmp_path = setup
    model_dir = tmp_path / "_triton_models" / "m"
    model_dir.mkdir(parents=True)
    client.errors["unload"] = RuntimeCallError(StatusCode.NOT_FOUND, "missing")
    server.unload_model("m")
    assert not model_dir.exists()


def test_unload_other_error_keeps_files(setup):
    server, client, tmp_path = setup
    model_dir = tmp_path / "_triton_models" / "m"
    model_dir.mkdir(parents=True)
    client.errors["unload"] = RuntimeCallError(StatusCode.INTERNAL, "boom")
    with pytest.raises(AdapterError) as info:
        server.unload_model("m")
    assert info.value.code == StatusCode.INTERNAL
    assert model_dir.exists()


def test_embedded_puller_without_puller(tmp_path):
    server = TritonAdapterServer(make_config(tmp_path, USE_EMBEDDED_PULLER="true"), FakeTriton())
    with pytest.raises(AdapterError) as info:
        server.load_model(LoadModelRequest(model_id="m", model_path="x"))
    assert info.value.code == StatusCode.FAILED_PRECONDITION


class FakePuller:
    def __init__(self, path):
        self.path = path
        self.cleaned = []
        self.cleared = []

    def process_load_model_request(self, request):
        return replace(request, model_path=self.path)

    def cleanup_model(self, model_id):
        self.cleaned.append(model_id)

    def clear_local_model_storage(self, exclude):
        self.cleared.append(exclude)


def test_embedded_puller_is_used(tmp_path):
    client = FakeTriton()
    server = TritonAdapterServer(make_config(tmp_path, USE_EMBEDDED_PULLER="1"), client)
    source = make_tfmnist(tmp_path)
    puller = FakePuller(str(source))
    server.puller = puller

    server.load_model(LoadModelRequest(model_id="m", model_type="tensorflow", model_path="x"))
    assert os.path.exists(tmp_path / "_triton_models" / "m" / "config.pbtxt")

    server.unload_model("m")
    assert puller.cleaned == ["m"]

    assert server.runtime_status().status == RuntimeState.READY
    assert puller.cleared == ["_triton_models"]