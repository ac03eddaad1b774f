"""EIP-712 typed structured data hashing.

- Encodes a ``eth_signTypedData_v4`` style payload and hashes it for signing

- Used by :py:mod:`bridge_kit.permit` for EIP-2612 permit messages

- `Based on Gnosis utilities <https://raw.githubusercontent.com/safe-global/safe-eth-py/master/gnosis/eth/eip712/__init__.py>`__,
  which in turn port the JavaScript ``eth-sig-util`` package

Example:

.. code-block:: python

    digest = eip712_encode_hash(
        {
            "types": {
                "EIP712Domain": [...],
                "Permit": [...],
            },
            "domain": {...},
            "primaryType": "Permit",
            "message": {...},
        }
    )
    signed = account.unsafe_sign_hash(digest)
"""

import re
from typing import Any

from eth_abi import encode as encode_abi
from eth_typing import Hash32
from hexbytes import HexBytes
from web3 import Web3

#: EIP-191 prefix for structured data
EIP712_PREFIX = bytes.fromhex("1901")


def keccak(value: bytes) -> bytes:
    return Web3.keccak(value)


def find_type_dependencies(primary_type: str, types: dict, found: list | None = None) -> list:
    """List struct types ``primary_type`` refers to, itself included."""
    if found is None:
        found = []

    primary_type = re.split(r"\W", primary_type)[0]
    if primary_type in found or not types.get(primary_type):
        return found

    found.append(primary_type)
    for member in types[primary_type]:
        find_type_dependencies(member["type"], types, found)
    return found


def encode_type(primary_type: str, types: dict) -> str:
    """Encode a struct type signature, e.g. ``Permit(address owner,...)``.

    Referenced struct types are appended in alphabetical order.
    """
    dependencies = find_type_dependencies(primary_type, types)
    ordered = [primary_type] + sorted(d for d in dependencies if d != primary_type)
    result = ""
    for name in ordered:
        members = ",".join(f"{m['type']} {m['name']}" for m in types[name])
        result += f"{name}({members})"
    return result


def hash_type(primary_type: str, types: dict) -> bytes:
    return keccak(encode_type(primary_type, types).encode())


def _encode_value(name: str, typ: str, value: Any, types: dict) -> tuple[str, Any]:
    if typ in types:
        if value is None:
            return "bytes32", b"\x00" * 32
        return "bytes32", keccak(encode_data(typ, value, types))

    if value is None:
        raise ValueError(f"Missing value for field {name} of type {typ}")

    if "bytes" in typ and isinstance(value, str):
        value = HexBytes(value)

    if "int" in typ and isinstance(value, str):
        value = int(value)

    if typ == "bytes":
        return "bytes32", keccak(value)

    if typ == "string":
        return "bytes32", keccak(value.encode("utf-8"))

    if typ.endswith("]"):
        item_type = typ[: typ.rindex("[")]
        encoded = [_encode_value(name, item_type, v, types) for v in value]
        item_types = [t for t, _ in encoded]
        item_values = [v for _, v in encoded]
        return "bytes32", keccak(encode_abi(item_types, item_values))

    return typ, value


def encode_data(primary_type: str, data: dict, types: dict) -> bytes:
    """ABI encode a struct value together with its type hash."""
    encoded_types = ["bytes32"]
    encoded_values = [hash_type(primary_type, types)]
    for member in types[primary_type]:
        typ, value = _encode_value(member["name"], member["type"], data.get(member["name"]), types)
        encoded_types.append(typ)
        encoded_values.append(value)
    return encode_abi(encoded_types, encoded_values)


def hash_struct(primary_type: str, data: dict, types: dict) -> bytes:
    return keccak(encode_data(primary_type, data, types))


def hash_domain(typed_data: dict) -> bytes:
    """The domain separator of a typed data payload.

    Tokens expose the same value as ``DOMAIN_SEPARATOR()``.
    """
    return hash_struct("EIP712Domain", typed_data["domain"], typed_data["types"])


def eip712_encode_hash(typed_data: dict[str, Any]) -> Hash32:
    """Hash typed data for signing.

    :param typed_data:
        EIP-712 payload with ``types``, ``domain``, ``primaryType`` and ``message``

    :return:
        Keccak256 digest of ``0x1901 || domainSeparator || hashStruct(message)``

    :raise ValueError:
        The payload is malformed
    """
    try:
        parts = [EIP712_PREFIX, hash_domain(typed_data)]
        if typed_data["primaryType"] != "EIP712Domain":
            parts.append(hash_struct(typed_data["primaryType"], typed_data["message"], typed_data["types"]))
    except (KeyError, AttributeError, TypeError, IndexError) as exc:
        raise ValueError(f"Not valid {typed_data}") from exc
    return Hash32(keccak(b"".join(parts)))
