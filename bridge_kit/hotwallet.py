"""Hot wallet with manual nonce management.

- Create a local wallet from a private key

- Sign bound contract calls with explicit gas parameters

Every :py:class:`bridge_kit.gateway.ChainGateway` owns its own :py:class:`HotWallet`,
as the nonce counter is per chain.
"""

import logging
from typing import NamedTuple, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.contract.contract import ContractFunction

logger = logging.getLogger(__name__)


class SignedTransactionWithNonce(NamedTuple):
    """A signed transaction with the nonce and source payload kept around.

    If broadcast fails we can still see what we tried to send,
    like the original gas parameters.
    """

    #: Bytes to broadcast
    raw_transaction: HexBytes

    #: Transaction hash
    hash: HexBytes

    #: What was the source nonce for this transaction
    nonce: int

    #: What was the source address for this transaction
    address: str

    #: Unencoded transaction data as a dict
    source: Optional[dict] = None

    def __repr__(self):
        return f"<SignedTransactionWithNonce hash:{self.hash.hex()} nonce:{self.nonce}>"


class HotWallet:
    """Hot wallet for signing transactions.

    - Holds a plain text private key in the process memory
      using :py:class:`eth_account.signers.local.LocalAccount`, and a nonce counter

    - Call :py:meth:`sync_nonce` before the first transaction

    .. note ::

        This class is not thread safe. Only one mutating call may be in flight
        per wallet, as the nonce ordering demands it.
    """

    def __init__(self, account: LocalAccount):
        self.account = account
        self.current_nonce: Optional[int] = None

    def __repr__(self):
        return f"<Hot wallet {self.account.address}>"

    @property
    def address(self) -> HexAddress:
        """Ethereum address of the wallet."""
        return self.account.address

    def sync_nonce(self, web3: Web3):
        """Initialise the current nonce from the on-chain data."""
        self.current_nonce = web3.eth.get_transaction_count(self.account.address)
        logger.info("Synced nonce for %s to %d", self.account.address, self.current_nonce)

    def allocate_nonce(self) -> int:
        """Get the next free nonce and increase the counter."""
        assert self.current_nonce is not None, f"Nonce is not yet synced from the blockchain: {self}"
        nonce = self.current_nonce
        self.current_nonce += 1
        return nonce

    def sign_transaction_with_new_nonce(self, tx: dict) -> SignedTransactionWithNonce:
        """Signs a transaction and allocates a nonce for it.

        :param tx:
            Ethereum transaction data as a dict.
            This is modified in-place to include nonce.
        """
        assert type(tx) == dict
        assert "nonce" not in tx
        tx["nonce"] = self.allocate_nonce()
        _signed = self.account.sign_transaction(tx)
        return SignedTransactionWithNonce(
            raw_transaction=_signed.raw_transaction,
            hash=HexBytes(_signed.hash),
            nonce=tx["nonce"],
            address=self.address,
            source=tx,
        )

    def sign_bound_call_with_new_nonce(
        self,
        func: ContractFunction,
        tx_params: dict,
    ) -> SignedTransactionWithNonce:
        """Signs a bound Web3 contract call.

        Example:

        .. code-block:: python

            approve_call = usdc.functions.approve(spender, raw_amount)
            signed_tx = hot_wallet.sign_bound_call_with_new_nonce(approve_call, gas_plan.get_tx_params())
            web3.eth.send_raw_transaction(signed_tx.raw_transaction)

        :param func:
            Web3 contract function that has its arguments bound

        :param tx_params:
            Transaction parameters. Must contain ``gas`` so that
            web3.py does not run its own estimation.
        """
        assert isinstance(func, ContractFunction), f"Got: {type(func)}"
        assert "gas" in tx_params, f"Gas limit missing: {tx_params}"
        tx_params = dict(tx_params)
        tx_params["from"] = self.address
        tx = func.build_transaction(tx_params)
        return self.sign_transaction_with_new_nonce(tx)

    @staticmethod
    def from_private_key(key: str) -> "HotWallet":
        """Create a hot wallet from a private key that is passed in as a hex string.

        :param key:
            0x prefixed hex string
        """
        assert type(key) == str, f"Expected private key as string, got {type(key)}"
        assert key.startswith("0x"), f"This system assumes private keys are prefixed with 0x, your key starts with {key[0:8]}... Please add 0x prefix to your private key hex string"
        account = Account.from_key(key)
        return HotWallet(account)
