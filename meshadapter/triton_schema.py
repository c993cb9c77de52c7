"""Model schema files and their conversion to model configurations."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from meshadapter.modelconfig import DataType, ModelConfig, ModelInput, ModelOutput

BOOL = "BOOL"
UINT8 = "UINT8"
UINT16 = "UINT16"
UINT32 = "UINT32"
UINT64 = "UINT64"
INT8 = "INT8"
INT16 = "INT16"
INT32 = "INT32"
INT64 = "INT64"
FP16 = "FP16"
FP32 = "FP32"
FP64 = "FP64"
BYTES = "BYTES"
STRING = "STRING"

TENSOR_TYPE = {
    "INVALID": DataType.TYPE_INVALID,
    BOOL: DataType.TYPE_BOOL,
    UINT8: DataType.TYPE_UINT8,
    UINT16: DataType.TYPE_UINT16,
    UINT32: DataType.TYPE_UINT32,
    UINT64: DataType.TYPE_UINT64,
    INT8: DataType.TYPE_INT8,
    INT16: DataType.TYPE_INT16,
    INT32: DataType.TYPE_INT32,
    INT64: DataType.TYPE_INT64,
    FP16: DataType.TYPE_FP16,
    FP32: DataType.TYPE_FP32,
    FP64: DataType.TYPE_FP64,
    BYTES: DataType.TYPE_STRING,
    STRING: DataType.TYPE_STRING,
}


class SchemaError(ValueError):
    """A model schema could not be read."""


@dataclass(frozen=True)
class TensorMetadata:
    name: str
    datatype: str
    shape: tuple[int, ...] = ()


@dataclass(frozen=True)
class ModelSchema:
    inputs: Optional[tuple[TensorMetadata, ...]] = None
    outputs: Optional[tuple[TensorMetadata, ...]] = None


def _tensor(entry, section: str) -> TensorMetadata:
    if not isinstance(entry, dict):
        raise SchemaError(f"each entry of {section!r} must be an object")
    name = entry.get("name", "")
    datatype = entry.get("datatype", "")
    shape = entry.get("shape", [])
    if not isinstance(name, str) or not isinstance(datatype, str):
        raise SchemaError(f"name and datatype in {section!r} must be strings")
    if shape is None:
        shape = []
    if not isinstance(shape, list) or any(
        isinstance(dim, bool) or not isinstance(dim, int) for dim in shape
    ):
        raise SchemaError(f"shape of tensor {name!r} must be a list of integers")
    return TensorMetadata(name=name, datatype=datatype, shape=tuple(shape))


def _section(document: dict, section: str):
    entries = document.get(section)
    if entries is None:
        return None
    if not isinstance(entries, list):
        raise SchemaError(f"{section!r} must be a list")
    return tuple(_tensor(entry, section) for entry in entries)


def load_model_schema(path) -> ModelSchema:
    """Read a JSON model schema file."""
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise SchemaError(f"unable to read schema file {path}: {exc}") from exc
    except ValueError as exc:
        raise SchemaError(f"unable to parse schema file {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise SchemaError(f"schema file {path} must hold a JSON object")
    return ModelSchema(inputs=_section(document, "inputs"), outputs=_section(document, "outputs"))


def convert_schema_to_config(schema: ModelSchema) -> ModelConfig:
    """Build a ModelConfig holding the inputs and outputs of a schema."""
    config = ModelConfig()
    for tensor in schema.inputs or ():
        config.input.append(
            ModelInput(
                name=tensor.name,
                data_type=TENSOR_TYPE.get(tensor.datatype, DataType.TYPE_INVALID),
                dims=list(tensor.shape),
            )
        )
    for tensor in schema.outputs or ():
        config.output.append(
            ModelOutput(
                name=tensor.name,
                data_type=TENSOR_TYPE.get(tensor.datatype, DataType.TYPE_INVALID),
                dims=list(tensor.shape),
            )
        )
    return config


def convert_schema_file_to_config(path) -> ModelConfig:
    """Read a schema file and convert it to a ModelConfig."""
    try:
        schema = load_model_schema(path)
    except SchemaError as exc:
        raise SchemaError(f"Error trying to convert schema to config: {exc}") from exc
    return convert_schema_to_config(schema)