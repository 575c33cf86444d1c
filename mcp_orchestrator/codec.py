"""
TOON (Token-Oriented Object Notation) encoder/decoder.

Compresses tool schemas and tool results for the controlling client. The
main saving comes from uniform arrays of objects: the field list is written
once in a header and every item becomes one comma-separated row.

    {"users": [{"id": 1, "name": "Alice"}, {"id": 2, "name": "Bob"}],
     "meta": {"count": 2}}

encodes to

    users[2]{id,name}:
      1,Alice
      2,Bob
    meta:
      count: 2

Line shapes:
    key: scalar                  scalar field
    key:                         nested object, block indented two spaces
    key: {}                      empty nested object
    key[N]{f1,f2.sub}:           tabular array, N rows follow (dotted = nested)
    key[N]: v1,v2                array of scalars
    key[N]:                      empty array (N=0) or list form, N "- " items follow

Strings that would read back as something else (numbers, true/false/null,
empty) carry a leading ' marker. Strings with control characters or edge
whitespace are written as a marked JSON string literal.

decode(encode(v)) == v for every JSON value except NaN and infinities.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any

MARKER = "'"
INDENT = "  "

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_$@][A-Za-z0-9_$@.\-/]*$")
_SAFE_FIELD = re.compile(r"^[A-Za-z0-9_$@][A-Za-z0-9_$@\-/]*$")
_NUMBER_LIKE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_INT = re.compile(r"^-?(0|[1-9]\d*)$")
_FLOAT = re.compile(r"^-?(0|[1-9]\d*)(\.\d+)?([eE][+-]?\d+)?$")
_HEADER = re.compile(r"^\[(\d+)\](?:\{([^}]*)\})?:(.*)$")
_CONTROL = re.compile(r"[\x00-\x1f\x7f]")
_LITERALS = {"null": None, "true": True, "false": False}


class ToonDecodeError(ValueError):
    """Malformed TOON text."""

    def __init__(self, message: str, lineno: int | None = None):
        if lineno is not None:
            message = f"line {lineno}: {message}"
        super().__init__(message)
        self.lineno = lineno


# ── Encoding ───────────────────────────────────────────────


def encode(data: Any) -> str:
    """
    Encode a JSON-like value to TOON text.

    Example: {"users": [{"id": 1, "name": "Alice"}]} -> "users[1]{id,name}:\\n  1,Alice"
    """
    if isinstance(data, dict):
        return "\n".join(_encode_object(data, 0))
    if isinstance(data, (list, tuple)):
        if not data:
            return "[]"
        return "\n".join(_encode_array("", list(data), 0))

    text = _encode_scalar(data)
    if isinstance(data, str) and not text.startswith(MARKER) and _is_key_line(text):
        # a bare top-level string must not read back as an object
        text = MARKER + text
    return text


def _encode_object(obj: dict, depth: int) -> list[str]:
    pad = INDENT * depth
    lines: list[str] = []
    for key, value in obj.items():
        name = _encode_key(key)
        if isinstance(value, (list, tuple)):
            lines.extend(_encode_array(name, list(value), depth))
        elif isinstance(value, dict):
            if value:
                lines.append(f"{pad}{name}:")
                lines.extend(_encode_object(value, depth + 1))
            else:
                lines.append(f"{pad}{name}: {{}}")
        else:
            lines.append(f"{pad}{name}: {_encode_scalar(value)}")
    return lines


def _encode_array(name: str, arr: list, depth: int) -> list[str]:
    pad = INDENT * depth
    if not arr:
        return [f"{pad}{name}[0]:"]

    if all(_is_scalar(item) for item in arr):
        cells = ",".join(_encode_cell(item) for item in arr)
        return [f"{pad}{name}[{len(arr)}]: {cells}"]

    table = _tabulate(arr)
    if table is not None:
        fields, rows = table
        lines = [f"{pad}{name}[{len(arr)}]{{{','.join(fields)}}}:"]
        row_pad = INDENT * (depth + 1)
        for row in rows:
            cells = ["" if f not in row else _encode_cell(row[f]) for f in fields]
            lines.append(row_pad + ",".join(cells))
        return lines

    lines = [f"{pad}{name}[{len(arr)}]:"]
    item_pad = INDENT * (depth + 1)
    for item in arr:
        if isinstance(item, dict):
            if item:
                lines.append(f"{item_pad}-")
                lines.extend(_encode_object(item, depth + 2))
            else:
                lines.append(f"{item_pad}- {{}}")
        elif isinstance(item, (list, tuple)):
            nested = _encode_array("", list(item), depth + 1)
            nested[0] = f"{item_pad}- {nested[0].lstrip(' ')}"
            lines.extend(nested)
        else:
            lines.append(f"{item_pad}- {_encode_scalar(item)}")
    return lines


def _tabulate(arr: list) -> tuple[list[str], list[dict[str, Any]]] | None:
    """Flatten uniform objects into (fields, rows), or None if that would lose information."""
    if not all(isinstance(item, dict) and item for item in arr):
        return None

    rows = []
    fields: dict[str, None] = {}
    for item in arr:
        flat = _flatten(item)
        if flat is None:
            return None
        rows.append(flat)
        for f in flat:
            fields.setdefault(f, None)
    return list(fields), rows


def _flatten(obj: dict, prefix: str = "") -> dict[str, Any] | None:
    result: dict[str, Any] = {}
    for key, value in obj.items():
        if not isinstance(key, str) or not _SAFE_FIELD.match(key):
            return None
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            if not value:
                return None
            nested = _flatten(value, path)
            if nested is None:
                return None
            result.update(nested)
        elif isinstance(value, (list, tuple)):
            return None
        else:
            result[path] = value
    return result


def _is_scalar(value: Any) -> bool:
    return not isinstance(value, (dict, list, tuple))


def _encode_key(key: Any) -> str:
    if not isinstance(key, str):
        raise TypeError(f"TOON object keys must be strings, got {type(key).__name__}")
    if _SAFE_KEY.match(key):
        return key
    return json.dumps(key, ensure_ascii=False)


def _encode_scalar(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"TOON cannot represent {value}")
        return repr(value)
    if isinstance(value, str):
        return _encode_string(value)
    raise TypeError(f"Cannot TOON-encode {type(value).__name__}")


def _encode_string(s: str) -> str:
    if _CONTROL.search(s) or s != s.strip():
        return MARKER + json.dumps(s, ensure_ascii=False)
    if _is_ambiguous(s):
        return MARKER + s
    return s


def _is_ambiguous(s: str) -> bool:
    return (
        s == ""
        or s.lower() in _LITERALS
        or bool(_NUMBER_LIKE.match(s))
        or s[0] in "'[{-"
    )


def _encode_cell(value: Any) -> str:
    text = _encode_scalar(value)
    if "," in text or '"' in text:
        return '"' + text.replace('"', '""') + '"'
    return text


# ── Decoding ───────────────────────────────────────────────


class _Line:
    __slots__ = ("indent", "text", "lineno")

    def __init__(self, indent: int, text: str, lineno: int):
        self.indent = indent
        self.text = text
        self.lineno = lineno


def decode(toon: str) -> Any:
    """Decode TOON text back to JSON-like data. The whole text is consumed."""
    lines = []
    for lineno, raw in enumerate(toon.split("\n"), start=1):
        raw = raw.rstrip("\r")
        if not raw.strip():
            continue
        stripped = raw.lstrip(" ")
        lines.append(_Line(len(raw) - len(stripped), stripped, lineno))

    if not lines:
        return {}

    parser = _Parser(lines)
    first = lines[0]
    if first.indent != 0:
        raise ToonDecodeError("unexpected indentation", first.lineno)

    if len(lines) == 1 and first.text == "[]":
        return []

    if first.text.startswith("["):
        parser.pos = 1
        value = parser.array_body(first.text, first)
    elif len(lines) == 1 and not _is_key_line(first.text):
        parser.pos = 1
        value = _parse_scalar(first.text, first.lineno)
    else:
        value = parser.block(0)

    if parser.pos != len(lines):
        extra = lines[parser.pos]
        raise ToonDecodeError(f"unexpected content {extra.text!r}", extra.lineno)
    return value


class _Parser:
    def __init__(self, lines: list[_Line]):
        self.lines = lines
        self.pos = 0

    def peek(self) -> _Line | None:
        return self.lines[self.pos] if self.pos < len(self.lines) else None

    def block(self, indent: int) -> dict[str, Any]:
        result: dict[str, Any] = {}
        while (line := self.peek()) is not None:
            if line.indent < indent:
                break
            if line.indent > indent:
                raise ToonDecodeError("unexpected indentation", line.lineno)
            self.pos += 1
            key, rest = _split_key(line.text, line.lineno)
            if key in result:
                raise ToonDecodeError(f"duplicate key {key!r}", line.lineno)
            result[key] = self.field(rest, line)
        return result

    def field(self, rest: str, line: _Line) -> Any:
        if rest.startswith("["):
            return self.array_body(rest, line)
        if rest == ":":
            nxt = self.peek()
            if nxt is None or nxt.indent <= line.indent:
                return {}
            return self.block(nxt.indent)
        if rest.startswith(": "):
            value = rest[2:]
            if value == "{}":
                return {}
            return _parse_scalar(value, line.lineno)
        raise ToonDecodeError(f"expected ':' after key in {line.text!r}", line.lineno)

    def array_body(self, header: str, line: _Line) -> list:
        match = _HEADER.match(header)
        if not match:
            raise ToonDecodeError(f"malformed array header {header!r}", line.lineno)
        count = int(match.group(1))
        fields_text = match.group(2)
        tail = match.group(3)

        if fields_text is not None:
            if tail.strip():
                raise ToonDecodeError("tabular header must end with ':'", line.lineno)
            fields = fields_text.split(",") if fields_text else []
            if not fields or not all(all(_SAFE_FIELD.match(p) for p in f.split(".")) for f in fields):
                raise ToonDecodeError(f"bad field list {{{fields_text}}}", line.lineno)
            return [self.row(fields, line) for _ in range(count)]

        if tail.startswith(" ") and tail.strip():
            cells = _split_cells(tail[1:], line.lineno)
            if len(cells) != count:
                raise ToonDecodeError(f"expected {count} values, found {len(cells)}", line.lineno)
            values = []
            for text, quoted in cells:
                if not text and not quoted:
                    raise ToonDecodeError("empty array element", line.lineno)
                values.append(_parse_scalar(text, line.lineno))
            return values

        if tail.strip():
            raise ToonDecodeError(f"malformed array header {header!r}", line.lineno)
        return [self.item(line) for _ in range(count)]

    def row(self, fields: list[str], header: _Line) -> dict[str, Any]:
        line = self.peek()
        if line is None or line.indent <= header.indent:
            raise ToonDecodeError(
                "tabular array is missing rows", (line or header).lineno
            )
        self.pos += 1
        cells = _split_cells(line.text, line.lineno)
        if len(cells) != len(fields):
            raise ToonDecodeError(
                f"expected {len(fields)} cells, found {len(cells)}", line.lineno
            )
        obj: dict[str, Any] = {}
        for field, (text, quoted) in zip(fields, cells):
            if not text and not quoted:
                continue
            _set_path(obj, field.split("."), _parse_scalar(text, line.lineno), line.lineno)
        return obj

    def item(self, header: _Line) -> Any:
        line = self.peek()
        if line is None or line.indent <= header.indent:
            raise ToonDecodeError("list is missing items", (line or header).lineno)
        self.pos += 1
        if line.text == "-":
            nxt = self.peek()
            if nxt is None or nxt.indent <= line.indent:
                raise ToonDecodeError("empty list item", line.lineno)
            return self.block(nxt.indent)
        if not line.text.startswith("- "):
            raise ToonDecodeError(f"expected '- ' list item, found {line.text!r}", line.lineno)
        text = line.text[2:]
        if text == "{}":
            return {}
        if text.startswith("["):
            return self.array_body(text, line)
        return _parse_scalar(text, line.lineno)


def _is_key_line(text: str) -> bool:
    if text.startswith(MARKER):
        return False
    try:
        _, rest = _split_key(text, None)
    except ToonDecodeError:
        return False
    return rest.startswith(":") or rest.startswith("[")


def _split_key(text: str, lineno: int | None) -> tuple[str, str]:
    if text.startswith('"'):
        try:
            key, end = json.JSONDecoder().raw_decode(text)
        except json.JSONDecodeError as e:
            raise ToonDecodeError(f"bad quoted key: {e.msg}", lineno) from None
        if not isinstance(key, str):
            raise ToonDecodeError("quoted key must be a string", lineno)
        return key, text[end:]

    match = re.match(r"[^:\[]*", text)
    key = match.group(0)
    if not key:
        raise ToonDecodeError(f"missing key in {text!r}", lineno)
    return key, text[len(key):]


def _split_cells(text: str, lineno: int) -> list[tuple[str, bool]]:
    """Split a row on commas, honouring double-quoted cells with "" escapes."""
    cells: list[tuple[str, bool]] = []
    i, n = 0, len(text)
    while True:
        if i < n and text[i] == '"':
            i += 1
            buf = []
            while True:
                if i >= n:
                    raise ToonDecodeError("unterminated quoted cell", lineno)
                ch = text[i]
                if ch == '"':
                    if i + 1 < n and text[i + 1] == '"':
                        buf.append('"')
                        i += 2
                        continue
                    i += 1
                    break
                buf.append(ch)
                i += 1
            cells.append(("".join(buf), True))
            if i < n and text[i] != ",":
                raise ToonDecodeError("unexpected text after quoted cell", lineno)
        else:
            end = text.find(",", i)
            if end == -1:
                end = n
            cell = text[i:end]
            if '"' in cell:
                raise ToonDecodeError(f"stray quote in cell {cell!r}", lineno)
            cells.append((cell, False))
            i = end
        if i >= n:
            return cells
        i += 1  # skip the comma


def _set_path(obj: dict, path: list[str], value: Any, lineno: int) -> None:
    for part in path[:-1]:
        nested = obj.setdefault(part, {})
        if not isinstance(nested, dict):
            raise ToonDecodeError(f"field {'.'.join(path)!r} conflicts with a scalar", lineno)
        obj = nested
    if path[-1] in obj:
        raise ToonDecodeError(f"field {'.'.join(path)!r} conflicts with a nested object", lineno)
    obj[path[-1]] = value


def _parse_scalar(text: str, lineno: int | None) -> Any:
    if text.startswith(MARKER):
        rest = text[1:]
        if rest.startswith('"'):
            try:
                value = json.loads(rest)
            except json.JSONDecodeError as e:
                raise ToonDecodeError(f"bad string literal: {e.msg}", lineno) from None
            if not isinstance(value, str):
                raise ToonDecodeError("marked literal must be a string", lineno)
            return value
        return rest
    if text in _LITERALS:
        return _LITERALS[text]
    if _INT.match(text):
        return int(text)
    if _FLOAT.match(text):
        return float(text)
    return text


# ── Helpers for tool payloads ──────────────────────────────


def compress_tool_schema(schema: dict[str, Any]) -> str:
    """Summarise a JSON Schema as TOON: one table row per property."""
    properties = schema.get("properties") or {}
    required = schema.get("required") or []
    simplified = {
        "type": schema.get("type"),
        "required": list(required),
        "properties": [
            {
                "name": name,
                "type": prop.get("type") if isinstance(prop, dict) else None,
                "description": ((prop.get("description") or "")[:50]) if isinstance(prop, dict) else "",
                "required": "yes" if name in required else "no",
            }
            for name, prop in properties.items()
        ],
    }
    return encode(simplified)


def compress_tool_result(result: Any) -> str:
    """Encode a tool result as TOON."""
    return encode(result)
