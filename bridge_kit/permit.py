"""EIP-2612 permit signatures.

A permit lets a spender move the owner's tokens with a signature,
without a separate on-chain ``approve()`` transaction.

- `EIP-2612 <https://eips.ethereum.org/EIPS/eip-2612>`__

Internally we use :py:mod:`bridge_kit.eip_712` module for hashing the messages.

Example:

.. code-block:: python

    data = construct_permit_message(
        chain_id=84532,
        token_address=usdc_address,
        token_name="USDC",
        token_version="2",
        owner=account.address,
        spender=bridge_address,
        value=1_000_000,
        nonce=0,
        deadline=int(time.time()) + 3600,
    )
    v, r, s = sign_permit(account, data)
"""

from eth_account._utils.signing import to_bytes32
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from web3 import Web3

from bridge_kit.eip_712 import eip712_encode_hash

#: Tokens that predate the ``version()`` convention sign with this
DEFAULT_PERMIT_VERSION = "1"

#: EIP-712 struct definitions for permit
PERMIT_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Permit": [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}


def construct_permit_message(
    chain_id: int,
    token_address: HexAddress | str,
    token_name: str,
    token_version: str | None,
    owner: HexAddress | str,
    spender: HexAddress | str,
    value: int,
    nonce: int,
    deadline: int,
) -> dict:
    """Create EIP-712 message for an EIP-2612 permit.

    The domain binds the signature to this token contract, chain and version,
    so it cannot be replayed elsewhere. The nonce makes it single use.

    :param token_version:
        ``None`` if the token does not expose ``version()``

    :param value:
        Raw token amount

    :param deadline:
        UNIX timestamp after which the permit is void

    :return:
        JSON message for EIP-712 signing.
    """
    assert value > 0, f"Bad permit value: {value}"
    assert nonce >= 0, f"Bad permit nonce: {nonce}"
    return {
        "types": PERMIT_TYPES,
        "domain": {
            "name": token_name,
            "version": token_version or DEFAULT_PERMIT_VERSION,
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(token_address),
        },
        "primaryType": "Permit",
        "message": {
            "owner": Web3.to_checksum_address(owner),
            "spender": Web3.to_checksum_address(spender),
            "value": value,
            "nonce": nonce,
            "deadline": deadline,
        },
    }


def sign_permit(account: LocalAccount, data: dict) -> tuple[int, bytes, bytes]:
    """Sign a permit message.

    :param account:
        Must be the ``owner`` of the message

    :return:
        ``(v, r, s)`` with ``r`` and ``s`` as bytes32
    """
    assert data["message"]["owner"] == account.address, f"Permit owner {data['message']['owner']} is not the signer {account.address}"
    message_hash = eip712_encode_hash(data)
    signed_message = account.unsafe_sign_hash(message_hash)
    return signed_message.v, to_bytes32(signed_message.r), to_bytes32(signed_message.s)
