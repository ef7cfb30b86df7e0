"""Tagged-variant tree for structured on-ledger data.

The ledger indexer returns inline datums in its detailed JSON schema:

    {"constructor": 0, "fields": [...]}
    {"int": 42}
    {"bytes": "deadbeef"}
    {"list": [...]}
    {"map": [{"k": ..., "v": ...}]}

``parse_plutus_data`` turns that into immutable nodes so the decoder can check
shapes explicitly instead of poking at nested dicts.
"""
from dataclasses import dataclass
from typing import Any, Dict, Tuple, Union

from .error_handling import DecodeError


@dataclass(frozen=True)
class PlutusInt:
    value: int

    def to_json(self) -> Dict[str, Any]:
        return {"int": self.value}


@dataclass(frozen=True)
class PlutusBytes:
    value: bytes

    def to_json(self) -> Dict[str, Any]:
        return {"bytes": self.value.hex()}


@dataclass(frozen=True)
class PlutusList:
    items: Tuple["PlutusData", ...]

    def to_json(self) -> Dict[str, Any]:
        return {"list": [item.to_json() for item in self.items]}


@dataclass(frozen=True)
class PlutusMap:
    entries: Tuple[Tuple["PlutusData", "PlutusData"], ...]

    def to_json(self) -> Dict[str, Any]:
        return {"map": [{"k": k.to_json(), "v": v.to_json()} for k, v in self.entries]}


@dataclass(frozen=True)
class PlutusConstr:
    index: int
    fields: Tuple["PlutusData", ...]

    def to_json(self) -> Dict[str, Any]:
        return {"constructor": self.index, "fields": [f.to_json() for f in self.fields]}


PlutusData = Union[PlutusInt, PlutusBytes, PlutusList, PlutusMap, PlutusConstr]


def parse_plutus_data(obj: Any, max_depth: int = 3, _depth: int = 0) -> PlutusData:
    """Parse detailed-schema JSON into a tree.

    ``max_depth`` bounds constructor nesting: the top-level constructor is
    depth 1. Anything deeper, or any unknown tag, raises DecodeError.
    """
    if not isinstance(obj, dict):
        raise DecodeError(f"Expected a tagged object, got {type(obj).__name__}")

    if "constructor" in obj:
        depth = _depth + 1
        if depth > max_depth:
            raise DecodeError(f"Constructor nesting exceeds depth {max_depth}")
        index = obj["constructor"]
        fields = obj.get("fields")
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise DecodeError(f"Invalid constructor index: {index!r}")
        if not isinstance(fields, list):
            raise DecodeError("Constructor fields must be a list")
        return PlutusConstr(
            index=index,
            fields=tuple(parse_plutus_data(f, max_depth, depth) for f in fields),
        )

    if "int" in obj:
        value = obj["int"]
        if isinstance(value, bool) or not isinstance(value, int):
            raise DecodeError(f"Invalid int value: {value!r}")
        return PlutusInt(value)

    if "bytes" in obj:
        value = obj["bytes"]
        if not isinstance(value, str):
            raise DecodeError(f"Invalid bytes value: {value!r}")
        try:
            return PlutusBytes(bytes.fromhex(value))
        except ValueError as e:
            raise DecodeError(f"Bytes value is not hex: {value!r}") from e

    if "list" in obj:
        items = obj["list"]
        if not isinstance(items, list):
            raise DecodeError("List value must be a list")
        return PlutusList(tuple(parse_plutus_data(i, max_depth, _depth) for i in items))

    if "map" in obj:
        entries = obj["map"]
        if not isinstance(entries, list):
            raise DecodeError("Map value must be a list of k/v pairs")
        pairs = []
        for entry in entries:
            if not isinstance(entry, dict) or "k" not in entry or "v" not in entry:
                raise DecodeError("Map entry must carry 'k' and 'v'")
            pairs.append((
                parse_plutus_data(entry["k"], max_depth, _depth),
                parse_plutus_data(entry["v"], max_depth, _depth),
            ))
        return PlutusMap(tuple(pairs))

    raise DecodeError(f"Unknown data tag: {sorted(obj.keys())}")
