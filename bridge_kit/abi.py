"""ABI loading from the bundled JSON files.

Provides functions to load ABI files and construct :py:class:`web3.contract.Contract` types.
The results are cached for the speedup.

Bundled files live in ``bridge_kit/abi/``:

- ``IERC20Permit.json``: ERC-20 with EIP-2612 ``permit()``
- ``BridgingKit.json``: source chain bridging kit contract
- ``MessageTransmitterV2.json``: destination chain message receiver
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Union

from eth_typing import HexAddress
from web3 import Web3
from web3.contract import Contract

# How big are our ABI and contract caches
_CACHE_SIZE = 64

#: Ethereum 0x0000000000000000000000000000000000000000 address
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@lru_cache(maxsize=_CACHE_SIZE)
def get_abi_by_filename(fname: str) -> dict:
    """Reads a embedded ABI file and returns it.

    Example::

        abi = get_abi_by_filename("IERC20Permit.json")

    :param fname:
        JSON filename under ``bridge_kit/abi``

    :return:
        Full contract interface dict with ``abi`` key
    """
    here = Path(__file__).resolve().parent
    abi_path = here / "abi" / Path(fname)
    with open(abi_path, "rt", encoding="utf-8") as f:
        abi = json.load(f)
    return abi


@lru_cache(maxsize=_CACHE_SIZE)
def get_contract(web3: Web3, fname: str) -> type[Contract]:
    """Create a Contract proxy class from our bundled ABI files.

    :param web3:
        Web3 instance

    :param fname:
        JSON filename under ``bridge_kit/abi``

    :return:
        Contract proxy class
    """
    contract_interface = get_abi_by_filename(fname)
    return web3.eth.contract(abi=contract_interface["abi"])


def get_deployed_contract(
    web3: Web3,
    fname: str,
    address: Union[HexAddress, str],
) -> Contract:
    """Get a Contract proxy object for a contract deployed at a specific address.

    :param web3:
        Web3 instance

    :param fname:
        JSON filename under ``bridge_kit/abi``

    :param address:
        Ethereum address of the deployed contract

    :return:
        `web3.contract.Contract` proxy
    """
    assert isinstance(web3, Web3), f"Got {type(web3)} instead of Web3"
    assert address, "get_deployed_contract() address was None"

    address = Web3.to_checksum_address(address)
    Contract = get_contract(web3, fname)
    return Contract(address)


def get_transaction_data_field(tx: dict) -> str:
    """Get the "Data" payload of a transaction.

    Ethereum Tester has this in ``tx.data`` while Ganache and real nodes have ``tx.input``.
    """
    if "data" in tx:
        return tx["data"]
    return tx["input"]
