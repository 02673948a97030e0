"""Tagged value tree for decoded RPC payloads.

RPC responses are schemaless nested arrays. Every payload is converted into
this explicit tree once, right after decoding, so the extraction heuristics
in ``parser`` are pure functions over a closed set of node types instead of
isinstance checks scattered over ``json`` output.
"""

import json
from dataclasses import dataclass
from typing import Any, Iterator, Union


@dataclass(frozen=True)
class Null:
    pass


@dataclass(frozen=True)
class Bool:
    value: bool


@dataclass(frozen=True)
class Number:
    value: int | float

    @property
    def is_integer(self) -> bool:
        return isinstance(self.value, int)


@dataclass(frozen=True)
class String:
    value: str


@dataclass(frozen=True)
class Array:
    items: tuple["Node", ...]

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> "Node":
        return self.items[index]

    def __iter__(self) -> Iterator["Node"]:
        return iter(self.items)

    def get(self, index: int) -> "Node | None":
        """Return the item at ``index`` or None when the array is shorter."""
        if 0 <= index < len(self.items):
            return self.items[index]
        return None


@dataclass(frozen=True)
class Object:
    members: tuple[tuple[str, "Node"], ...]


Node = Union[Null, Bool, Number, String, Array, Object]

NULL = Null()


def from_json(value: Any) -> Node:
    """Convert a value produced by ``json.loads`` into a tree node."""
    if value is None:
        return NULL
    # bool is a subclass of int, so it must be checked first
    if isinstance(value, bool):
        return Bool(value)
    if isinstance(value, (int, float)):
        return Number(value)
    if isinstance(value, str):
        return String(value)
    if isinstance(value, list):
        return Array(tuple(from_json(item) for item in value))
    if isinstance(value, dict):
        return Object(tuple((str(k), from_json(v)) for k, v in value.items()))
    raise TypeError(f"Unsupported JSON value: {type(value).__name__}")


def to_json(node: Node) -> Any:
    """Convert a tree node back into plain Python values (for logging/debugging)."""
    if isinstance(node, Null):
        return None
    if isinstance(node, (Bool, Number, String)):
        return node.value
    if isinstance(node, Array):
        return [to_json(item) for item in node.items]
    return {key: to_json(value) for key, value in node.members}


def loads(text: str) -> Node:
    """Decode JSON text into a tree.

    Raises:
        json.JSONDecodeError: If the text is not valid JSON.
    """
    return from_json(json.loads(text))


def string_value(node: "Node | None") -> str | None:
    """Return the Python string held by a String node, else None."""
    if isinstance(node, String):
        return node.value
    return None


def iter_strings(node: Node) -> Iterator[str]:
    """Yield every string leaf under ``node``, depth-first, left to right.

    Object members are not searched; the protocol only carries arrays.
    """
    if isinstance(node, String):
        yield node.value
    elif isinstance(node, Array):
        for item in node.items:
            yield from iter_strings(item)
