# meshadapter

A library for the adapter that sits between a model mesh and a Triton
inference server. It takes a model that has already been pulled to local
disk, arranges its files as a Triton model repository entry, asks Triton to
load it, estimates its memory size, unloads it again, and reports whether the
runtime is ready and how much capacity it has.

The package uses only the standard library. Calls to Triton go through a
client object that you supply, so any transport can be used.

## Configuration

Settings come from environment variables. Pass any mapping; with no argument
`os.environ` is used.

```python
import os

from meshadapter.triton_config import config_from_env

config = config_from_env(os.environ)
print(config.root_model_dir)   # "<ROOT_MODEL_DIR>/_triton_models"
```

`meshadapter.torchserve_config.config_from_env` reads the same kind of
settings for a TorchServe runtime and returns a
`TorchServeAdapterConfiguration` whose `model_store_dir` is
`<ROOT_MODEL_DIR>/_torchserve_models`.

| Variable | Triton default | TorchServe default |
| --- | --- | --- |
| `ADAPTER_PORT` | 8085 | 8085 |
| `RUNTIME_PORT` | 8001 | 7071 |
| `RUNTIME_DATA_ENDPOINT` | n/a | `port:7070` |
| `CONTAINER_MEM_REQ_BYTES` | required | required |
| `MEM_BUFFER_BYTES` | 268435456 | 268435456 |
| `LOADING_CONCURRENCY` | 1 | 1 |
| `LOADTIME_TIMEOUT` | 30000 | 30000 |
| `DEFAULT_MODELSIZE` | 1000000 | 1000000 |
| `MODELSIZE_MULTIPLIER` | 1.25 | 2.75 |
| `RUNTIME_VERSION` | `v1` | `v1` |
| `LIMIT_PER_MODEL_CONCURRENCY` | 0 (no limit) | 0 (no limit) |
| `ROOT_MODEL_DIR` | `/models` | `/models` |
| `USE_EMBEDDED_PULLER` | false | false |
| `REQUEST_BATCH_SIZE` | n/a | 0 |
| `MAX_BATCH_DELAY_SECS` | n/a | 0 |

`capacity_in_bytes` is `CONTAINER_MEM_REQ_BYTES` minus `MEM_BUFFER_BYTES`.
A missing or negative memory request, a multiplier that is not greater than
zero, or a value that cannot be read as its type raises
`meshadapter.triton_config.ConfigError`.

## Laying out a Triton model

```python
from meshadapter.triton_layout import adapt_model_layout_for_runtime

adapt_model_layout_for_runtime(
    "/models/_triton_models",      # root of the Triton repository
    "mnist",                       # model id
    "tensorflow:1.5",              # model type; anything after ":" is ignored
    "/models/mnist",               # where the model files were pulled to
    "/models/mnist/_schema.json",  # optional schema, "" for none
)
```

The target directory `<root>/<model id>` is cleared first, then filled with
symbolic links back to the model files:

- A single file is linked as `1/model.graphdef`, `1/model.plan`,
  `1/model.onnx` or `1/model.pt` for the types `tensorflow`, `tensorrt`,
  `onnx` and `pytorch`, and under its own name for other types.
- A directory whose subdirectories are all integers is treated as versioned,
  and the highest version is used (`largest_number_dir`).
- A directory that already holds a `config.pbtxt` is taken as a complete
  Triton repository (`is_triton_model_repository`): its entries are linked,
  and the config is copied with `name` removed and any schema applied
  (`process_model_config`).
- When that config has `max_batch_size > 0`, every input and output in the
  schema must start with a `-1` batch dimension, which is then dropped;
  otherwise `LayoutError` is raised.
- A schema file next to a plain model produces a `config.pbtxt` with the
  backend for the model type and the schema's inputs and outputs.
- A Keras `.h5` file is first converted to a TensorFlow SavedModel by
  `convert_keras_to_tf`, which runs `python /opt/scripts/tf_pb.py` in a
  separate process. `MAX_CONC_KERAS_CONV_PROCS` (default 2) limits how many
  conversions run at once.

Failures are raised as `LayoutError`.

## Model configs and schemas

`meshadapter.modelconfig` reads and writes the protobuf text format of a
Triton model config. Fields it does not model are kept and written back.

```python
from meshadapter.modelconfig import format_model_config, parse_model_config

config = parse_model_config('backend: "onnxruntime"\nmax_batch_size: 8\n')
print(format_model_config(config))
```

`meshadapter.triton_schema` reads JSON schemas with `inputs` and `outputs`
lists (`name`, `datatype`, `shape`) and turns them into the inputs and
outputs of a `ModelConfig`:

```python
from meshadapter.triton_schema import convert_schema_file_to_config

config = convert_schema_file_to_config("/models/mnist/_schema.json")
```

## The Triton adapter

`TritonAdapterServer(config, client)` offers `load_model`, `unload_model`
and `runtime_status`. The client must provide `repository_model_load(name)`,
`repository_model_unload(name)`, `server_ready()`,
`repository_index(ready=...)` returning model names, and `server_metadata()`
returning the version string. It reports failures by raising
`meshadapter.common.RuntimeCallError` with a `StatusCode`.

- `load_model(LoadModelRequest(...))` takes the model type from the
  `model_type` entry of the request's JSON `model_key` (a string or an object
  with `name`), falling back to `request.model_type`. It lays out the files,
  loads the model and returns a `LoadModelResponse` whose size is
  `disk_size_bytes` from the model key times the multiplier, or the default
  size.
- `unload_model(model_id)` unloads the model, tolerating NOT_FOUND, and
  removes its directory.
- `runtime_status()` stays `STARTING` until Triton is ready. It then unloads
  every loaded model, clears the repository root, takes the runtime version
  from Triton when one is given, and reports `READY` with capacity, loading
  limits and the method names whose requests carry the model id. A failure
  to clear local files reports `FAILING`.

Errors are raised as `AdapterError`, carrying the status code of the failed
call (`UNKNOWN` when there is none).

When `use_embedded_puller` is set, assign an object with
`process_load_model_request`, `cleanup_model` and `clear_local_model_storage`
to the server's `puller` attribute; without one, the operations that need it
raise `AdapterError` with `FAILED_PRECONDITION`.

## What this package does not do

- It does not listen for or serve RPC requests and has no command-line
  program; wire `TritonAdapterServer` into a server of your own.
- It contains no Triton client; you supply it.
- For TorchServe it provides only the configuration. Linking `.mar` archives
  into a model store, registering models with TorchServe and measuring their
  size are not part of it.