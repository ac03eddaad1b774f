"""Revert reason extraction.

Ethereum nodes do not store the transaction failure reason.
We get it by replaying the transaction against the current state.

Further reading

- `Web3.py Patterns: Revert Reason Lookups <https://snakecharmers.ethereum.org/web3py-revert-reason-parsing/>`_

"""

import logging
from typing import Union

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError

from bridge_kit.abi import get_transaction_data_field

logger = logging.getLogger(__name__)

#: Returned when the node does not tell us anything useful
UNKNOWN_REVERT_REASON = "<could not extract the revert reason>"


def fetch_transaction_revert_reason(
    web3: Web3,
    tx_hash: Union[HexBytes, str],
    unknown_error_message=UNKNOWN_REVERT_REASON,
) -> str:
    """Gets a transaction revert reason.

    Replays the transaction against the current state. No archive node is needed,
    but the revert reason might differ from what happened when the transaction was mined.

    :param web3:
        Our JSON-RPC connection

    :param tx_hash:
        Transaction hash of which reason we extract by simulation.

    :param unknown_error_message:
        Return this message if the revert reason extraction fails.

    :return:
        The revert reason or the placeholder message
    """
    tx = web3.eth.get_transaction(tx_hash)

    replay_tx = {
        "to": tx["to"],
        "from": tx["from"],
        "value": tx["value"],
        "data": get_transaction_data_field(tx),
        "gas": tx["gas"],
    }

    try:
        web3.eth.call(replay_tx)
    except ContractLogicError as e:
        return e.args[0]
    except ValueError as e:
        # Some nodes give us the raw JSON-RPC error payload
        logger.debug("Revert exception result is: %s", e)
        data = e.args[0] if e.args else None
        if isinstance(data, str):
            return data
        if isinstance(data, dict) and "message" in data:
            return data["message"]

    logger.warning("Could not replay reverted transaction %s to get its revert reason", HexBytes(tx_hash).hex())
    return unknown_error_message
