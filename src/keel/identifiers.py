"""Service identifiers and the metadata value codec.

An identifier is the key a service is bound under: a plain string, a type, or
a :class:`Token` (an interned symbolic tag that compares equal by name).

The codec turns identifiers and metadata values into a closed, tagged,
JSON-compatible shape and back again. It is used to dump metadata for
inspection and in tests.
"""

import base64
import importlib
import pickle
from dataclasses import dataclass
from typing import Any, Dict, Union

from .exceptions import CodecError


@dataclass(frozen=True)
class Token:
    """Symbolic identifier. Two tokens with the same name are the same key.

    Example:
        >>> Token("Logger") == Token("Logger")
        True
    """

    name: str

    def __str__(self) -> str:
        return f"Token({self.name})"


KeyT = Union[str, type, Token]

_PRIMITIVES = (type(None), bool, int, float, str)


def identifier_name(key: Any) -> str:
    if isinstance(key, str):
        return key
    if isinstance(key, Token):
        return key.name
    return getattr(key, "__name__", str(key))


def encode_identifier(key: KeyT) -> Dict[str, Any]:
    if isinstance(key, str):
        return {"kind": "name", "value": key}
    if isinstance(key, Token):
        return {"kind": "token", "value": key.name}
    if isinstance(key, type):
        qualname = key.__qualname__
        if "<locals>" in qualname:
            raise CodecError(f"Type {qualname} is not importable and cannot be encoded")
        return {"kind": "type", "module": key.__module__, "qualname": qualname}
    raise CodecError(f"Unsupported identifier: {key!r}")


def decode_identifier(data: Dict[str, Any]) -> KeyT:
    kind = data.get("kind")
    if kind == "name":
        return data["value"]
    if kind == "token":
        return Token(data["value"])
    if kind == "type":
        try:
            obj: Any = importlib.import_module(data["module"])
            for part in data["qualname"].split("."):
                obj = getattr(obj, part)
        except (ImportError, AttributeError) as e:
            raise CodecError(f"Cannot import {data['module']}.{data['qualname']}: {e}") from e
        return obj
    raise CodecError(f"Unknown identifier kind: {kind!r}")


def encode_value(value: Any) -> Dict[str, Any]:
    """Encode a metadata value into its tagged form.

    Variants:
        ``primitive``: ``None``, ``bool``, ``int``, ``float``, ``str``.
        ``sequence``: ``list`` or ``tuple`` (the ``tuple`` flag keeps the type).
        ``mapping``: ``dict``, stored as a list of encoded ``[key, value]`` pairs.
        ``blob``: ``bytes``, base64 text.
        ``identifier``: a :class:`Token` or an importable type.
        ``opaque``: anything else, pickled and base64 encoded.
    """
    if isinstance(value, _PRIMITIVES):
        return {"t": "primitive", "v": value}
    if isinstance(value, (list, tuple)):
        return {"t": "sequence", "tuple": isinstance(value, tuple), "v": [encode_value(v) for v in value]}
    if isinstance(value, dict):
        return {"t": "mapping", "v": [[encode_value(k), encode_value(v)] for k, v in value.items()]}
    if isinstance(value, bytes):
        return {"t": "blob", "v": base64.b64encode(value).decode("ascii")}
    if isinstance(value, Token) or (isinstance(value, type) and "<locals>" not in value.__qualname__):
        return {"t": "identifier", "v": encode_identifier(value)}
    try:
        payload = pickle.dumps(value)
    except Exception as e:
        raise CodecError(f"Cannot encode opaque value of type {type(value).__name__}: {e}") from e
    return {"t": "opaque", "v": base64.b64encode(payload).decode("ascii")}


def decode_value(data: Dict[str, Any]) -> Any:
    tag = data.get("t")
    if tag == "primitive":
        return data["v"]
    if tag == "sequence":
        items = [decode_value(v) for v in data["v"]]
        return tuple(items) if data.get("tuple") else items
    if tag == "mapping":
        return {decode_value(k): decode_value(v) for k, v in data["v"]}
    if tag == "blob":
        return base64.b64decode(data["v"])
    if tag == "identifier":
        return decode_identifier(data["v"])
    if tag == "opaque":
        return pickle.loads(base64.b64decode(data["v"]))
    raise CodecError(f"Unknown value tag: {tag!r}")
