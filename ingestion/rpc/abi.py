"""
ingestion/rpc/abi.py

Method descriptors and ABI encode/decode for contract reads.

Descriptors are consumed as configuration (see config/runtime_schema.py);
nothing here authors ABIs. Encoding and decoding are pure functions of
their inputs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from eth_abi import decode, encode
from eth_abi.exceptions import ABITypeError, DecodingError, EncodingError, ParseError
from eth_utils import decode_hex, encode_hex, function_signature_to_4byte_selector

from .errors import DomainError, ErrorKind

logger = logging.getLogger(__name__)

# Error(string) and Panic(uint256) revert payload selectors
ERROR_SELECTOR = bytes.fromhex("08c379a0")
PANIC_SELECTOR = bytes.fromhex("4e487b71")

HexOrBytes = Union[str, bytes]


@lru_cache(maxsize=512)
def selector_for(signature: str) -> bytes:
    """4-byte selector of a canonical signature like 'balanceOf(address)'."""
    return function_signature_to_4byte_selector(signature)


def to_bytes(data: HexOrBytes) -> bytes:
    """Accept 0x-hex or raw bytes."""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str):
        try:
            return decode_hex(data)
        except (ValueError, TypeError) as e:
            raise DomainError(f"not hex data: {data[:20]!r}", kind=ErrorKind.MALFORMED_RESPONSE) from e
    raise DomainError(f"unexpected data type {type(data).__name__}", kind=ErrorKind.MALFORMED_RESPONSE)


@dataclass(frozen=True)
class MethodDescriptor:
    """Contract method shape: name, argument types, return types."""
    name: str
    arg_types: Tuple[str, ...] = ()
    return_types: Tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.arg_types)})"

    @property
    def selector(self) -> bytes:
        return selector_for(self.signature)

    def encode_call(self, args: Sequence[Any] = ()) -> bytes:
        """Selector + ABI-encoded arguments.

        Raises:
            DomainError(MALFORMED_ARGS): arguments do not fit the types.
        """
        args = tuple(args)
        if len(args) != len(self.arg_types):
            raise DomainError(
                f"{self.signature} takes {len(self.arg_types)} args, got {len(args)}",
                kind=ErrorKind.MALFORMED_ARGS,
            )
        try:
            return self.selector + encode(list(self.arg_types), list(args))
        except (EncodingError, ABITypeError, ParseError, TypeError, ValueError) as e:
            raise DomainError(f"cannot encode args for {self.signature}: {e}", kind=ErrorKind.MALFORMED_ARGS) from e

    def encode_call_hex(self, args: Sequence[Any] = ()) -> str:
        return encode_hex(self.encode_call(args))

    def decode_result(self, data: HexOrBytes) -> Any:
        """Decode return data.

        One return type yields the bare value, several yield a tuple, none
        yields None.

        Raises:
            DomainError(MALFORMED_RESPONSE): data does not match return types.
        """
        raw = to_bytes(data)
        if not self.return_types:
            return None
        if not raw:
            raise DomainError(f"empty return data for {self.signature}", kind=ErrorKind.MALFORMED_RESPONSE)
        try:
            values = decode(list(self.return_types), raw)
        except (DecodingError, ABITypeError, ParseError, TypeError, ValueError) as e:
            raise DomainError(f"cannot decode {self.signature} result: {e}", kind=ErrorKind.MALFORMED_RESPONSE) from e
        if len(self.return_types) == 1:
            return values[0]
        return tuple(values)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "MethodDescriptor":
        """Build from a config mapping {arg_types: [...], return_types: [...]}."""
        return cls(
            name=data.get("name", name),
            arg_types=tuple(data.get("arg_types") or ()),
            return_types=tuple(data.get("return_types") or ()),
        )


def descriptors_from_config(methods: Dict[str, Dict[str, Any]]) -> Dict[str, MethodDescriptor]:
    return {name: MethodDescriptor.from_dict(name, spec or {}) for name, spec in methods.items()}


def decode_revert_reason(data: Optional[HexOrBytes]) -> Optional[str]:
    """
    Extract a human readable reason from revert data.

    Handles Error(string) and Panic(uint256); returns None for anything else.
    """
    if data is None:
        return None
    try:
        raw = to_bytes(data)
    except DomainError:
        return None
    if len(raw) < 4:
        return None

    selector, body = raw[:4], raw[4:]
    try:
        if selector == ERROR_SELECTOR:
            (reason,) = decode(["string"], body)
            return reason
        if selector == PANIC_SELECTOR:
            (code,) = decode(["uint256"], body)
            return f"panic code {hex(code)}"
    except (DecodingError, ValueError) as e:
        logger.debug(f"[abi] Unparseable revert payload: {e}")
    return None


REVERT_PREFIXES = ("execution reverted:", "VM Exception while processing transaction: revert")


def clean_revert_message(message: str) -> str:
    """Strip node boilerplate in front of a revert reason."""
    text = (message or "").strip()
    for prefix in REVERT_PREFIXES:
        if text.startswith(prefix):
            return text[len(prefix):].strip()
    return text
