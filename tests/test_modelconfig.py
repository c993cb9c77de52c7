import pytest

from meshadapter.modelconfig import (
    DataType,
    ModelConfig,
    ModelInput,
    ModelOutput,
    PbtxtError,
    format_model_config,
    parse_model_config,
    write_config_pbtxt,
)

SAMPLE = """platform: "bogus"
name: "REMOVE_ME"
max_batch_size: 1
input [
  {
    name: "INPUT__0"
    data_type: TYPE_UINT8
    dims: [1, 28, 28]
  }
]
output [
  {
    name: "OUTPUT__0"
    data_type: TYPE_FP32
    dims: [10]
  }
]
instance_group [
    {
        count: 1
        kind: KIND_CPU
    }
]
"""


def test_parse_sample():
    config = parse_model_config(SAMPLE)
    assert config.name == "REMOVE_ME"
    assert config.platform == "bogus"
    assert config.max_batch_size == 1
    assert config.input == [ModelInput("INPUT__0", DataType.TYPE_UINT8, [1, 28, 28])]
    assert config.output == [ModelOutput("OUTPUT__0", DataType.TYPE_FP32, [10])]
    assert [name for name, _ in config.extras] == ["instance_group"]


def test_round_trip_preserves_everything():
    config = parse_model_config(SAMPLE)
    text = format_model_config(config)
    assert parse_model_config(text) == config
    assert "instance_group" in text
    assert "KIND_CPU" in text


def test_removing_name_drops_it_from_output():
    config = parse_model_config(SAMPLE)
    config.name = ""
    text = format_model_config(config)
    assert "REMOVE_ME" not in text
    assert "INPUT__0" in text
    assert "OUTPUT__0" in text


def test_format_backend_only():
    assert format_model_config(ModelConfig(backend="onnxruntime")) == 'backend: "onnxruntime"\n'


def test_format_empty():
    assert format_model_config(ModelConfig()) == ""


def test_repeated_and_list_dims_are_equivalent():
    assert parse_model_config("input { dims: 1 dims: 2 }") == parse_model_config(
        "input [{ dims: [1, 2] }]"
    )


def test_escaped_string_round_trip():
    config = ModelConfig(name='a "quoted"\\path\n\ttab')
    assert parse_model_config(format_model_config(config)) == config


def test_numeric_data_type():
    config = parse_model_config("input { data_type: 11 }")
    assert config.input[0].data_type == DataType.TYPE_FP32


def test_negative_and_hex_dims():
    config = parse_model_config("input { dims: -1 dims: 0x10 }")
    assert config.input[0].dims == [-1, 16]


def test_comments_and_bytes_input():
    config = parse_model_config(b'# comment\nbackend: "pytorch" # trailing\n')
    assert config.backend == "pytorch"


def test_adjacent_strings_concatenate():
    assert parse_model_config('name: "ab" "cd"').name == "abcd"


@pytest.mark.parametrize(
    "text",
    [
        'name: "unterminated',
        "input {",
        'max_batch_size: "x"',
        "input { data_type: TYPE_NOPE }",
        'name "x"',
        "}",
        "name: @",
    ],
)
def test_invalid_text(text):
    with pytest.raises(PbtxtError):
        parse_model_config(text)


def test_write_config_pbtxt(tmp_path):
    config = ModelConfig(
        backend="pytorch",
        max_batch_size=100,
        input=[ModelInput("INPUT", DataType.TYPE_FP32, [64, 64])],
        output=[ModelOutput("OUTPUT", DataType.TYPE_INT64, [10])],
    )
    path = tmp_path / "config.pbtxt"
    write_config_pbtxt(path, config)
    assert parse_model_config(path.read_text()) == config