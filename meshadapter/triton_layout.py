"""Rewriting pulled model files into the layout of a Triton model repository."""

from __future__ import annotations

import functools
import logging
import os
import re
import shutil
import stat
import subprocess
import threading
from typing import Iterable, Union

from meshadapter.common import (
    TENSORFLOW_SAVED_MODEL_DIR_NAME,
    TRITON_REPOSITORY_CONFIG_FILENAME,
    secure_join,
)
from meshadapter.modelconfig import (
    ModelConfig,
    PbtxtError,
    format_model_config,
    parse_model_config,
    write_config_pbtxt,
)
from meshadapter.triton_schema import (
    SchemaError,
    convert_schema_file_to_config,
    convert_schema_to_config,
    load_model_schema,
)

logger = logging.getLogger(__name__)

MODEL_SCHEMA_FILE = "_schema.json"
KERAS_CONVERSION_SCRIPT = "/opt/scripts/tf_pb.py"
MAX_KERAS_CONVERSIONS_ENV = "MAX_CONC_KERAS_CONV_PROCS"
DEFAULT_MAX_KERAS_CONVERSIONS = 2

# Name used for the model when the model path is a directory.
MODEL_TYPE_TO_DIR_NAME = {
    "tensorflow": TENSORFLOW_SAVED_MODEL_DIR_NAME,
    "onnx": "model.onnx",
    "keras": "model.savedmodel",
}

MODEL_TYPE_TO_BACKEND = {
    "tensorflow": "tensorflow",
    "tensorrt": "tensorrt",
    "onnx": "onnxruntime",
    "pytorch": "pytorch",
    "keras": "tensorflow",
}

# Name used for the model when the model path is a single file.
MODEL_TYPE_TO_FILE_NAME = {
    "tensorflow": "model.graphdef",
    "tensorrt": "model.plan",
    "onnx": "model.onnx",
    "pytorch": "model.pt",
}

_INTEGER = re.compile(r"[+-]?[0-9]+")


class LayoutError(Exception):
    """The model files could not be arranged for the runtime."""


def _is_dir(entry) -> bool:
    if isinstance(entry, os.DirEntry):
        return entry.is_dir(follow_symlinks=False)
    return entry.is_dir()


def _read_dir(path: str) -> list[os.DirEntry]:
    try:
        with os.scandir(path) as entries:
            return sorted(entries, key=lambda entry: entry.name)
    except OSError as exc:
        raise LayoutError(f"Could not read files in dir {path}: {exc}") from exc


def _remove_all(path: str) -> None:
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.info("Ignoring error trying to remove dir %s: %s", path, exc)


def _join(base: str, *parts: str) -> str:
    try:
        return secure_join(base, *parts)
    except ValueError as exc:
        raise LayoutError(f"Unable to securely join {base!r} and {parts!r}: {exc}") from exc


def largest_number_dir(entries: Iterable) -> str:
    """Name of the largest positive integer directory, or "" if any directory is not an integer.

    Entries need a name attribute and an is_dir() method; files are ignored.
    """
    largest = 0
    largest_name = ""
    for entry in entries:
        if not _is_dir(entry):
            continue
        if not _INTEGER.fullmatch(entry.name):
            return ""
        value = int(entry.name)
        if value > largest:
            largest = value
            largest_name = entry.name
    return largest_name


def is_triton_model_repository(names: Iterable[str]) -> bool:
    """True if the names hold a Triton repository config file."""
    return any(name == TRITON_REPOSITORY_CONFIG_FILENAME for name in names)


@functools.lru_cache(maxsize=None)
def _keras_semaphore() -> threading.BoundedSemaphore:
    value = os.environ.get(MAX_KERAS_CONVERSIONS_ENV)
    if value is None:
        return threading.BoundedSemaphore(DEFAULT_MAX_KERAS_CONVERSIONS)
    try:
        count = int(value.strip())
    except ValueError:
        raise LayoutError(f"{MAX_KERAS_CONVERSIONS_ENV} env var must have int value") from None
    if count < 1:
        raise LayoutError(f"{MAX_KERAS_CONVERSIONS_ENV} env var must be a positive integer")
    return threading.BoundedSemaphore(count)


def convert_keras_to_tf(keras_file, target_path) -> None:
    """Convert a Keras .h5 model to a TensorFlow SavedModel with an external script."""
    command = ["python", KERAS_CONVERSION_SCRIPT, os.fspath(keras_file), os.fspath(target_path)]
    with _keras_semaphore():
        try:
            process = subprocess.Popen(
                command, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, text=True
            )
        except OSError as exc:
            raise LayoutError(
                f"Failed to start python process for keras model conversion: {exc}"
            ) from exc
        try:
            for line in process.stdout:
                logger.info(line.rstrip("\n"))
        finally:
            process.stdout.close()
        returncode = process.wait()
    if returncode != 0:
        logger.error("keras model conversion failed: exit status %d", returncode)
        raise LayoutError(f"keras model conversion failed: exit status {returncode}")


def _all_have_batch_dimension(config: ModelConfig) -> bool:
    return all(
        tensor.dims and tensor.dims[0] == -1 for tensor in [*config.input, *config.output]
    )


def process_model_config(pbtxt: Union[bytes, str], schema_path="") -> Union[bytes, str]:
    """Drop the name field from a config.pbtxt and apply the schema, if one is given.

    Text that cannot be parsed is returned unchanged. The result has the type of the input.
    """
    try:
        config = parse_model_config(pbtxt)
    except PbtxtError as exc:
        logger.error("Unable to unmarshal config.pbtxt: %s", exc)
        return pbtxt

    logger.info("Deleting `name` field from config.pbtxt (removed_name=%r)", config.name)
    config.name = ""

    if schema_path:
        try:
            schema = load_model_schema(schema_path)
        except SchemaError as exc:
            raise SchemaError(f"Error trying to convert schema to config: {exc}") from exc
        schema_config = convert_schema_to_config(schema)

        # With max_batch_size > 0 the runtime prepends the batch dimension itself,
        # so the explicit one in the schema has to go.
        if config.max_batch_size > 0:
            if not _all_have_batch_dimension(schema_config):
                raise LayoutError(
                    "Conflicting model configuration: If model has schema and config.pbtxt with "
                    "max_batch_size > 0, then the first dimension of all inputs and outputs must "
                    "have size -1."
                )
            for tensor in [*schema_config.input, *schema_config.output]:
                tensor.dims = tensor.dims[1:]

        if schema.inputs is not None:
            config.input = schema_config.input
        if schema.outputs is not None:
            config.output = schema_config.output

    text = format_model_config(config)
    return text.encode("utf-8") if isinstance(pbtxt, (bytes, bytearray)) else text


def _create_from_path(
    model_path: str, version: str, schema_path: str, model_type: str, target_dir: str
) -> None:
    try:
        is_dir = stat.S_ISDIR(os.stat(model_path).st_mode)
    except OSError as exc:
        raise LayoutError(f"Error calling stat on {model_path}: {exc}") from exc

    if is_dir:
        dir_name = MODEL_TYPE_TO_DIR_NAME.get(model_type)
        link_rel = _join(version, dir_name) if dir_name else version
    else:
        file_name = MODEL_TYPE_TO_FILE_NAME.get(model_type) or os.path.basename(model_path)
        link_rel = _join(version, file_name)
    link_path = _join(target_dir, link_rel)

    try:
        os.makedirs(os.path.dirname(link_path), 0o755, exist_ok=True)
    except OSError as exc:
        raise LayoutError(f"Error creating directories for path {link_path}: {exc}") from exc
    try:
        os.symlink(model_path, link_path)
    except OSError as exc:
        raise LayoutError(f"Error creating symlink: {exc}") from exc

    if not schema_path:
        return

    schema_config = convert_schema_file_to_config(schema_path)
    config = ModelConfig(
        backend=MODEL_TYPE_TO_BACKEND.get(model_type, ""),
        input=schema_config.input,
        output=schema_config.output,
    )
    config_file = _join(target_dir, TRITON_REPOSITORY_CONFIG_FILENAME)
    try:
        write_config_pbtxt(config_file, config)
    except OSError as exc:
        raise LayoutError(f"Unable to write config.pbtxt: {exc}") from exc


def _create_from_directory(
    entries: list, model_path: str, schema_path: str, model_type: str, target_dir: str
) -> None:
    entries = [entry for entry in entries if entry.name != MODEL_SCHEMA_FILE]

    version = largest_number_dir(entries)
    if version:
        model_path = _join(model_path, version)
        entries = _read_dir(model_path)
    else:
        version = "1"

    # A known model type with a single entry: that entry is the model.
    if len(entries) == 1 and (
        model_type in MODEL_TYPE_TO_DIR_NAME or model_type in MODEL_TYPE_TO_FILE_NAME
    ):
        model_path = _join(model_path, entries[0].name)

    _create_from_path(model_path, version, schema_path, model_type, target_dir)


def _adapt_native_layout(
    entries: list, source_dir: str, schema_path: str, target_dir: str
) -> None:
    for entry in entries:
        source = _join(source_dir, entry.name)
        if entry.name == TRITON_REPOSITORY_CONFIG_FILENAME:
            try:
                with open(source, "rb") as handle:
                    pbtxt = handle.read()
            except OSError as exc:
                raise LayoutError(f"Error reading config file {source}: {exc}") from exc
            processed = process_model_config(pbtxt, schema_path)
            target = _join(target_dir, TRITON_REPOSITORY_CONFIG_FILENAME)
            mode = stat.S_IMODE(entry.stat(follow_symlinks=False).st_mode)
            try:
                fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
                with os.fdopen(fd, "wb") as handle:
                    handle.write(processed)
            except OSError as exc:
                raise LayoutError(f"Error writing config file {source}: {exc}") from exc
            continue

        link = _join(target_dir, entry.name)
        try:
            os.symlink(source, link)
        except OSError as exc:
            raise LayoutError(f"Error creating symlink to {source}: {exc}") from exc


def adapt_model_layout_for_runtime(
    root_model_dir, model_id: str, model_type: str, model_path, schema_path=""
) -> None:
    """Build root_model_dir/model_id as a Triton repository entry pointing at the model files."""
    model_type = model_type.split(":")[0].lower()
    model_path = os.fspath(model_path)
    schema_path = os.fspath(schema_path) if schema_path else ""

    target_dir = _join(os.fspath(root_model_dir), model_id)
    _remove_all(target_dir)
    try:
        os.makedirs(target_dir, 0o755, exist_ok=True)
    except OSError as exc:
        raise LayoutError(f"Error creating directories for path {target_dir}: {exc}") from exc

    try:
        is_dir = stat.S_ISDIR(os.stat(model_path).st_mode)
    except OSError as exc:
        raise LayoutError(f"Error calling stat on model file: {exc}") from exc

    if not is_dir and model_type == "keras":
        converted = _join(os.path.dirname(model_path), TENSORFLOW_SAVED_MODEL_DIR_NAME)
        try:
            convert_keras_to_tf(model_path, converted)
        except LayoutError as exc:
            raise LayoutError(
                f"Error while converting keras model {model_path} to tensorflow: {exc}"
            ) from exc
        model_path = converted

    entries = _read_dir(model_path) if is_dir else []
    try:
        if not is_dir:
            _create_from_path(model_path, "1", schema_path, model_type, target_dir)
        elif is_triton_model_repository(entry.name for entry in entries):
            _adapt_native_layout(entries, model_path, schema_path, target_dir)
        else:
            _create_from_directory(entries, model_path, schema_path, model_type, target_dir)
    except (LayoutError, SchemaError, PbtxtError, OSError, ValueError) as exc:
        raise LayoutError(
            f"Error processing model/schema files for model {model_id}: {exc}"
        ) from exc