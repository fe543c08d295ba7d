from __future__ import annotations

import json
import tomllib
from typing import Any, Optional

import yaml

from docexec.docexec_datatypes import Failure, PlainValue, RichValue
from docexec.docexec_document import Leaf, Node
from docexec.docexec_printer import mime_text


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str) -> str:
    if isinstance(data, (bytes, bytearray)):
        return data.decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def format_from_path(path: str) -> Optional[str]:
    """Maps a file extension to 'json' | 'yaml' | 'toml'."""
    lowered = str(path).lower()
    if lowered.endswith('.json'):
        return 'json'
    if lowered.endswith(('.yaml', '.yml')):
        return 'yaml'
    if lowered.endswith('.toml'):
        return 'toml'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str, *, fmt: Optional[str] = None) -> Any:
    """
    Convert UTF-8 file data (bytes/string) to native Python structures.
    Supported fmt: 'json', 'yaml', 'toml'. Malformed input raises the
    parser's own error (json.JSONDecodeError, yaml.YAMLError, tomllib.TOMLDecodeError).
    Unknown formats return the raw text.
    """
    text = _norm_text(data)
    f = (fmt or '').lower()
    if f == 'json':
        return json.loads(text)
    if f == 'yaml':
        return yaml.safe_load(text)
    if f == 'toml':
        return tomllib.loads(text)
    return text


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True) -> str:
    """
    Convert a native Python value into a textual representation.
    - fmt: 'json' | 'yaml'
    Document trees are converted with `document_to_data` first.
    """
    f = (fmt or '').lower()
    built = document_to_data(value) if isinstance(value, (Node, Leaf)) else value
    if f == 'json':
        if pretty:
            return json.dumps(built, indent=2, ensure_ascii=False)
        return json.dumps(built, separators=(',', ':'), ensure_ascii=False)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported serialization format: {fmt}")


def _leaf_to_data(value: Any) -> Any:
    match value:
        case RichValue(mimebundle=bundle):
            return {"mimebundle": {mime: mime_text(bundle, mime) for mime in bundle}}
        case Failure():
            return {"error": value.format_error()}
        case PlainValue(value=inner):
            return _leaf_to_data(inner)
        case str() | int() | float() | bool() | None:
            return value
        case _:
            return repr(value)


def document_to_data(node: Node | Leaf) -> Any:
    """Converts a tree into plain dict/list data suitable for JSON or YAML."""
    if isinstance(node, Leaf):
        return _leaf_to_data(node.value)
    data: dict = {"tag": node.tag}
    if node.attributes:
        data["attributes"] = dict(node.attributes)
    data["children"] = [document_to_data(c) for c in node.children]
    return data
