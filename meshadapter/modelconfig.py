"""Model configuration records and their protobuf text format."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union


class PbtxtError(ValueError):
    """Text could not be read as a model configuration."""


class DataType(enum.IntEnum):
    TYPE_INVALID = 0
    TYPE_BOOL = 1
    TYPE_UINT8 = 2
    TYPE_UINT16 = 3
    TYPE_UINT32 = 4
    TYPE_UINT64 = 5
    TYPE_INT8 = 6
    TYPE_INT16 = 7
    TYPE_INT32 = 8
    TYPE_INT64 = 9
    TYPE_FP16 = 10
    TYPE_FP32 = 11
    TYPE_FP64 = 12
    TYPE_STRING = 13
    TYPE_BF16 = 14


@dataclass(frozen=True)
class _Scalar:
    kind: str  # "string", "number" or "ident"
    text: str

    def render(self) -> str:
        return _quote(self.text) if self.kind == "string" else self.text


_Value = Union[_Scalar, tuple]


@dataclass
class ModelInput:
    name: str = ""
    data_type: DataType = DataType.TYPE_INVALID
    dims: list[int] = field(default_factory=list)
    extras: list = field(default_factory=list)


@dataclass
class ModelOutput:
    name: str = ""
    data_type: DataType = DataType.TYPE_INVALID
    dims: list[int] = field(default_factory=list)
    extras: list = field(default_factory=list)


@dataclass
class ModelConfig:
    """Model configuration; fields not modelled here are kept in extras."""

    name: str = ""
    platform: str = ""
    backend: str = ""
    max_batch_size: int = 0
    input: list[ModelInput] = field(default_factory=list)
    output: list[ModelOutput] = field(default_factory=list)
    extras: list = field(default_factory=list)


_LEXER = re.compile(
    r"""
    (?P<ws>\s+|\#[^\n]*)
    |(?P<string>"(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')
    |(?P<number>[-+]?(?:0[xX][0-9a-fA-F]+|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?[fF]?)(?![\w.]))
    |(?P<ident>-?[A-Za-z_][\w.]*)
    |(?P<punct>[:{}\[\]<>,;])
    """,
    re.VERBOSE,
)

_ESCAPE = re.compile(
    r"\\(?:([0-7]{1,3})|[xX]([0-9a-fA-F]{1,2})|u([0-9a-fA-F]{4})|U([0-9a-fA-F]{8})|(.))",
    re.S,
)
_SIMPLE_ESCAPES = {
    "n": "\n", "t": "\t", "r": "\r", "a": "\a", "b": "\b", "f": "\f", "v": "\v",
    "\\": "\\", "'": "'", '"': '"', "?": "?",
}
_QUOTE_MAP = {"\\": "\\\\", '"': '\\"', "\n": "\\n", "\r": "\\r", "\t": "\\t"}


def _quote(value: str) -> str:
    parts = []
    for ch in value:
        if ch in _QUOTE_MAP:
            parts.append(_QUOTE_MAP[ch])
        elif ord(ch) < 0x20 or ch == "\x7f":
            parts.append(f"\\{ord(ch):03o}")
        else:
            parts.append(ch)
    return '"' + "".join(parts) + '"'


def _decode_string(raw: str) -> str:
    body = raw[1:-1]
    out = bytearray()
    pos = 0
    for match in _ESCAPE.finditer(body):
        out += body[pos:match.start()].encode("utf-8")
        octal, hexa, short_u, long_u, simple = match.groups()
        if octal is not None:
            value = int(octal, 8)
            if value > 0xFF:
                raise PbtxtError(f"octal escape out of range: \\{octal}")
            out.append(value)
        elif hexa is not None:
            out.append(int(hexa, 16))
        elif short_u is not None or long_u is not None:
            code = int(short_u or long_u, 16)
            try:
                out += chr(code).encode("utf-8")
            except (ValueError, UnicodeEncodeError) as exc:
                raise PbtxtError(f"invalid unicode escape in {raw}") from exc
        elif simple in _SIMPLE_ESCAPES:
            out += _SIMPLE_ESCAPES[simple].encode("utf-8")
        else:
            raise PbtxtError(f"invalid escape \\{simple} in {raw}")
        pos = match.end()
    out += body[pos:].encode("utf-8")
    try:
        return out.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PbtxtError(f"string is not valid UTF-8: {raw}") from exc


def _tokenize(text: str) -> list[tuple[str, str, int]]:
    lexemes = []
    pos = 0
    while pos < len(text):
        match = _LEXER.match(text, pos)
        if match is None:
            raise PbtxtError(f"unexpected character {text[pos]!r} at offset {pos}")
        kind = match.lastgroup
        if kind != "ws":
            lexemes.append((kind, match.group(), pos))
        pos = match.end()
    return lexemes


class _Parser:
    def __init__(self, text: str) -> None:
        self._items = _tokenize(text)
        self._index = 0

    def _peek(self):
        return self._items[self._index] if self._index < len(self._items) else None

    def _advance(self):
        item = self._peek()
        if item is None:
            raise PbtxtError("unexpected end of input")
        self._index += 1
        return item

    def _accept(self, punct: str) -> bool:
        item = self._peek()
        if item is not None and item[0] == "punct" and item[1] == punct:
            self._index += 1
            return True
        return False

    def parse_message(self, closing: str | None) -> tuple:
        fields = []
        while True:
            item = self._peek()
            if item is None:
                if closing is None:
                    return tuple(fields)
                raise PbtxtError(f"expected {closing!r} before end of input")
            if closing is not None and self._accept(closing):
                return tuple(fields)
            fields.extend(self._parse_field())
            if not self._accept(","):
                self._accept(";")

    def _parse_field(self) -> list:
        kind, name, pos = self._advance()
        if kind != "ident":
            raise PbtxtError(f"expected a field name at offset {pos}, found {name!r}")
        has_colon = self._accept(":")
        if self._accept("["):
            values = []
            if not self._accept("]"):
                while True:
                    values.append(self._parse_value(name, has_colon))
                    if self._accept("]"):
                        break
                    if not self._accept(","):
                        raise PbtxtError(f"expected ',' or ']' in list for field {name!r}")
            return [(name, value) for value in values]
        return [(name, self._parse_value(name, has_colon))]

    def _parse_value(self, name: str, has_colon: bool) -> _Value:
        kind, text, pos = self._advance()
        if kind == "punct" and text == "{":
            return self.parse_message("}")
        if kind == "punct" and text == "<":
            return self.parse_message(">")
        if not has_colon:
            raise PbtxtError(f"expected ':' after field {name!r}")
        if kind == "string":
            value = _decode_string(text)
            while (item := self._peek()) is not None and item[0] == "string":
                value += _decode_string(self._advance()[1])
            return _Scalar("string", value)
        if kind in ("number", "ident"):
            return _Scalar(kind, text)
        raise PbtxtError(f"unexpected {text!r} at offset {pos} for field {name!r}")


def _string(name: str, value: _Value) -> str:
    if not isinstance(value, _Scalar) or value.kind != "string":
        raise PbtxtError(f"field {name!r} expects a string")
    return value.text


def _integer(name: str, value: _Value) -> int:
    if not isinstance(value, _Scalar) or value.kind != "number":
        raise PbtxtError(f"field {name!r} expects an integer")
    text = value.text
    sign = -1 if text.startswith("-") else 1
    body = text.lstrip("+-")
    try:
        if body[:2].lower() == "0x":
            return sign * int(body[2:], 16)
        if len(body) > 1 and body.startswith("0") and body.isdigit():
            return sign * int(body, 8)
        if body.isdigit():
            return sign * int(body)
    except ValueError:
        pass
    raise PbtxtError(f"field {name!r} expects an integer, found {text}")


def _message(name: str, value: _Value) -> tuple:
    if not isinstance(value, tuple):
        raise PbtxtError(f"field {name!r} expects a message")
    return value


def _data_type(value: _Value) -> DataType:
    if isinstance(value, _Scalar) and value.kind == "ident":
        try:
            return DataType[value.text]
        except KeyError:
            raise PbtxtError(f"unknown data_type {value.text}") from None
    number = _integer("data_type", value)
    try:
        return DataType(number)
    except ValueError:
        raise PbtxtError(f"unknown data_type {number}") from None


def _tensor_from_fields(cls, fields: tuple):
    tensor = cls()
    for name, value in fields:
        if name == "name":
            tensor.name = _string(name, value)
        elif name == "data_type":
            tensor.data_type = _data_type(value)
        elif name == "dims":
            tensor.dims.append(_integer(name, value))
        else:
            tensor.extras.append((name, value))
    return tensor


def _tensor_fields(tensor) -> tuple:
    fields = []
    if tensor.name:
        fields.append(("name", _Scalar("string", tensor.name)))
    if tensor.data_type != DataType.TYPE_INVALID:
        fields.append(("data_type", _Scalar("ident", DataType(tensor.data_type).name)))
    fields.extend(("dims", _Scalar("number", str(int(dim)))) for dim in tensor.dims)
    fields.extend(tensor.extras)
    return tuple(fields)


def parse_model_config(text) -> ModelConfig:
    """Parse protobuf text format into a ModelConfig."""
    if isinstance(text, (bytes, bytearray)):
        try:
            text = bytes(text).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PbtxtError("model configuration is not valid UTF-8") from exc
    config = ModelConfig()
    for name, value in _Parser(text).parse_message(None):
        if name == "name":
            config.name = _string(name, value)
        elif name == "platform":
            config.platform = _string(name, value)
        elif name == "backend":
            config.backend = _string(name, value)
        elif name == "max_batch_size":
            config.max_batch_size = _integer(name, value)
        elif name == "input":
            config.input.append(_tensor_from_fields(ModelInput, _message(name, value)))
        elif name == "output":
            config.output.append(_tensor_from_fields(ModelOutput, _message(name, value)))
        else:
            config.extras.append((name, value))
    return config


def _render(fields, indent: int, lines: list[str]) -> None:
    pad = "  " * indent
    for name, value in fields:
        if isinstance(value, _Scalar):
            lines.append(f"{pad}{name}: {value.render()}")
        else:
            lines.append(f"{pad}{name}: {{")
            _render(value, indent + 1, lines)
            lines.append(f"{pad}}}")


def format_model_config(config: ModelConfig) -> str:
    """Render a ModelConfig as multi-line protobuf text format."""
    fields = []
    if config.name:
        fields.append(("name", _Scalar("string", config.name)))
    if config.platform:
        fields.append(("platform", _Scalar("string", config.platform)))
    if config.backend:
        fields.append(("backend", _Scalar("string", config.backend)))
    if config.max_batch_size:
        fields.append(("max_batch_size", _Scalar("number", str(int(config.max_batch_size)))))
    fields.extend(("input", _tensor_fields(tensor)) for tensor in config.input)
    fields.extend(("output", _tensor_fields(tensor)) for tensor in config.output)
    fields.extend(config.extras)
    lines: list[str] = []
    _render(fields, 0, lines)
    return "\n".join(lines) + "\n" if lines else ""


def write_config_pbtxt(path, config: ModelConfig) -> None:
    """Write a ModelConfig to a config.pbtxt file."""
    Path(path).write_text(format_model_config(config), encoding="utf-8")