"""
Contract operation encoding and decoding.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Sequence, Tuple

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector


def _abi_type(component: Dict[str, Any]) -> str:
    """Canonical type string for an ABI input/output entry, expanding tuples."""
    abi_type = component["type"]
    if abi_type.startswith("tuple"):
        inner = ",".join(_abi_type(c) for c in component.get("components", []))
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type


@dataclass(frozen=True)
class Operation:
    """A read-only contract function: its name and its argument/return types."""

    name: str
    input_types: Tuple[str, ...] = ()
    output_types: Tuple[str, ...] = ()

    @classmethod
    def from_abi(cls, abi: Sequence[Dict[str, Any]], name: str) -> "Operation":
        for entry in abi:
            if entry.get("type", "function") == "function" and entry.get("name") == name:
                return cls(
                    name=name,
                    input_types=tuple(_abi_type(i) for i in entry.get("inputs", [])),
                    output_types=tuple(_abi_type(o) for o in entry.get("outputs", [])),
                )
        raise KeyError(f"Function {name!r} not found in ABI")

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    def encode_call(self, params: Sequence[Any]) -> bytes:
        if len(params) != len(self.input_types):
            raise ValueError(
                f"{self.signature} takes {len(self.input_types)} params, got {len(params)}"
            )
        return self.selector + encode(list(self.input_types), list(params))

    def decode_result(self, data: bytes) -> Any:
        """Decode return data; one output decodes to a scalar, several to a tuple."""
        if not self.output_types:
            return None
        values = decode(list(self.output_types), data)
        if len(values) == 1:
            return values[0]
        return tuple(values)

