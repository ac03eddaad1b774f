"""Read and write access to one blockchain.

A :py:class:`ChainGateway` is constructed once per chain and passed by reference
to everything that needs that chain. It owns

- the Web3 JSON-RPC connection

- the :py:class:`bridge_kit.chain.ChainProfile`

- a per-chain :py:class:`bridge_kit.hotwallet.HotWallet` nonce counter

Reads are simple RPC round trips with no retry.
Retry policy lives in the caller, as different calls need different semantics.

Example:

.. code-block:: python

    gateway = ChainGateway(profile, account)
    balances = gateway.fetch_balances(gateway.address)
    receipt = gateway.transact(bound_func, gas_plan)
"""

import datetime
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from functools import cached_property
from typing import Optional

from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import HTTPProvider, Web3
from web3.contract import Contract
from web3.contract.contract import ContractFunction
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TransactionNotFound

from bridge_kit.abi import get_deployed_contract
from bridge_kit.chain import ChainProfile
from bridge_kit.constants import DEFAULT_CONFIRMATION_TIMEOUT, USDC_DECIMALS
from bridge_kit.exceptions import ConfirmationTimeout, ContractCallReverted, InsufficientGasFunds
from bridge_kit.gas import GasPlan, GasPriceSuggestion, estimate_gas_price
from bridge_kit.hotwallet import HotWallet
from bridge_kit.revert_reason import UNKNOWN_REVERT_REASON, fetch_transaction_revert_reason

logger = logging.getLogger(__name__)

#: How often we ask the node for a receipt
DEFAULT_RECEIPT_POLL_DELAY = datetime.timedelta(seconds=1)

#: Seconds for a single JSON-RPC request.
#:
#: A hanging receipt query can overrun the confirmation timeout by at most this much.
DEFAULT_RPC_REQUEST_TIMEOUT = 10.0


def is_out_of_gas(eth_rpc_error_message: str) -> bool:
    return "insufficient funds" in eth_rpc_error_message


def convert_to_decimals(raw_amount: int, decimals: int = USDC_DECIMALS) -> Decimal:
    """Convert raw token units to decimals."""
    assert type(raw_amount) == int, f"Got {type(raw_amount)}, expected int: {raw_amount}"
    return Decimal(raw_amount) / Decimal(10**decimals)


def convert_to_raw(decimal_amount: Decimal, decimals: int = USDC_DECIMALS) -> int:
    """Convert decimalised token amount to raw uint256.

    :raise ValueError:
        If the amount has more precision than the token
    """
    scaled = Decimal(decimal_amount).scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {decimal_amount} cannot be expressed with {decimals} decimals")
    return int(scaled)


@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    """Token and gas balances of one address on one chain."""

    #: Chain name
    chain: str

    #: Whose balances
    address: HexAddress

    #: USDC balance
    token: Decimal

    #: Native currency balance, for gas
    native: Decimal


@dataclass(slots=True)
class PendingTransaction:
    """A broadcasted transaction waiting to be mined."""

    #: Chain name
    chain: str

    #: Transaction hash
    tx_hash: HexBytes

    #: Nonce we used
    nonce: int

    #: Contract function name, for logging
    function_name: str

    #: UNIX time of broadcast
    submitted_at: float = field(default_factory=time.time)

    @property
    def tx_hash_hex(self) -> str:
        return Web3.to_hex(self.tx_hash)


@dataclass(frozen=True, slots=True)
class Receipt:
    """What we need from a transaction receipt."""

    #: 0x prefixed transaction hash
    tx_hash: str

    #: Block where the transaction was included
    block_number: int

    #: Gas consumed
    gas_used: int

    #: Did the transaction succeed
    success: bool

    #: Decoded revert reason for failed transactions, if we could get one
    revert_reason: Optional[str] = None

    #: The raw receipt from the node
    raw: Optional[dict] = field(default=None, repr=False, compare=False)

    @staticmethod
    def from_web3(receipt: dict, revert_reason: Optional[str] = None) -> "Receipt":
        return Receipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            success=receipt["status"] == 1,
            revert_reason=revert_reason,
            raw=dict(receipt),
        )


class ChainGateway:
    """Owned access to one chain for one signer."""

    def __init__(
        self,
        profile: ChainProfile,
        account: LocalAccount,
        web3: Optional[Web3] = None,
        receipt_poll_delay: datetime.timedelta = DEFAULT_RECEIPT_POLL_DELAY,
        rpc_request_timeout: float = DEFAULT_RPC_REQUEST_TIMEOUT,
    ):
        """
        :param profile:
            Chain configuration

        :param account:
            Signer. The gateway wraps it in its own :py:class:`HotWallet`.

        :param web3:
            Use an existing connection instead of creating one from ``profile.rpc_url``

        :param receipt_poll_delay:
            Sleep between receipt queries when waiting for confirmation

        :param rpc_request_timeout:
            HTTP timeout for each JSON-RPC request when we create the connection
        """
        assert isinstance(profile, ChainProfile), f"Got {type(profile)}"
        if web3 is None:
            assert profile.rpc_url, f"No JSON-RPC URL configured for {profile.name}"
            web3 = Web3(HTTPProvider(profile.rpc_url, request_kwargs={"timeout": rpc_request_timeout}))
        self.profile = profile
        self.web3 = web3
        self.wallet = HotWallet(account)
        self.receipt_poll_delay = receipt_poll_delay

    def __repr__(self):
        return f"<ChainGateway {self.profile.name} wallet:{self.wallet.address}>"

    @property
    def address(self) -> HexAddress:
        """The signer address."""
        return self.wallet.address

    @cached_property
    def chain_id(self) -> int:
        """Chain id as reported by the node."""
        chain_id = self.web3.eth.chain_id
        if chain_id != self.profile.chain_id:
            logger.warning("Chain %s configured with chain id %d, but the node reports %d", self.profile.name, self.profile.chain_id, chain_id)
        return chain_id

    @cached_property
    def token_contract(self) -> Contract:
        """USDC on this chain."""
        return get_deployed_contract(self.web3, "IERC20Permit.json", self.profile.token_address)

    @cached_property
    def bridge_contract(self) -> Contract:
        """Bridging kit contract on this chain."""
        assert self.profile.can_burn, f"No bridging kit deployed on {self.profile.name}"
        return get_deployed_contract(self.web3, "BridgingKit.json", self.profile.bridge_address)

    @cached_property
    def message_transmitter(self) -> Contract:
        """MessageTransmitterV2 on this chain."""
        return get_deployed_contract(self.web3, "MessageTransmitterV2.json", self.profile.message_transmitter_address)

    def get_token_balance(self, address: HexAddress | str) -> Decimal:
        raw = self.token_contract.functions.balanceOf(Web3.to_checksum_address(address)).call()
        return convert_to_decimals(raw)

    def get_native_balance(self, address: HexAddress | str) -> Decimal:
        raw = self.web3.eth.get_balance(Web3.to_checksum_address(address))
        return Decimal(raw) / Decimal(10**18)

    def get_allowance(self, owner: HexAddress | str, spender: HexAddress | str) -> Decimal:
        raw = self.token_contract.functions.allowance(
            Web3.to_checksum_address(owner),
            Web3.to_checksum_address(spender),
        ).call()
        return convert_to_decimals(raw)

    def fetch_balances(self, address: HexAddress | str) -> BalanceSnapshot:
        """Read token and native balances at the same time."""
        with ThreadPoolExecutor(max_workers=2) as executor:
            token_future = executor.submit(self.get_token_balance, address)
            native_future = executor.submit(self.get_native_balance, address)
            return BalanceSnapshot(
                chain=self.profile.name,
                address=address,
                token=token_future.result(),
                native=native_future.result(),
            )

    def fetch_token_name(self) -> str:
        return self.token_contract.functions.name().call()

    def fetch_token_version(self) -> Optional[str]:
        """Read the EIP-712 version string.

        :return:
            ``None`` if the token predates the ``version()`` convention
        """
        try:
            return self.token_contract.functions.version().call()
        except (ContractLogicError, BadFunctionCallOutput) as e:
            logger.info("Token %s does not expose version(): %s", self.profile.token_address, e)
            return None

    def fetch_permit_nonce(self, owner: HexAddress | str) -> int:
        return self.token_contract.functions.nonces(Web3.to_checksum_address(owner)).call()

    def fetch_gas_price(self) -> GasPriceSuggestion:
        return estimate_gas_price(self.web3)

    def estimate_gas(self, func: ContractFunction) -> int:
        """Dry run a call from our wallet.

        :raise ContractLogicError:
            If the call would revert
        """
        return func.estimate_gas({"from": self.address})

    def submit_call(self, func: ContractFunction, gas_plan: GasPlan) -> PendingTransaction:
        """Sign and broadcast a bound contract call.

        :raise ContractCallReverted:
            The node refused the call as it would revert

        :raise InsufficientGasFunds:
            The node refused the call as we cannot pay for the gas
        """
        if self.wallet.current_nonce is None:
            self.wallet.sync_nonce(self.web3)

        tx_params = gas_plan.get_tx_params()
        tx_params["chainId"] = self.chain_id
        signed = self.wallet.sign_bound_call_with_new_nonce(func, tx_params)

        try:
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            self.wallet.sync_nonce(self.web3)
            reason = getattr(e, "message", None) or str(e)
            raise ContractCallReverted(
                f"Contract call {func.fn_name}() failed on {self.profile.name}. Please check: 1) USDC balance, 2) Contract addresses, 3) Destination domain. Reason: {reason}",
                reason=reason,
            ) from e
        except Exception as e:
            # The nonce was not consumed
            self.wallet.sync_nonce(self.web3)
            if is_out_of_gas(str(e)):
                raise InsufficientGasFunds(f"Node refused {func.fn_name}() on {self.profile.name}: {e}") from e
            raise

        pending = PendingTransaction(
            chain=self.profile.name,
            tx_hash=HexBytes(tx_hash),
            nonce=signed.nonce,
            function_name=func.fn_name,
        )
        logger.info("%s() transaction sent on %s, tx hash %s, nonce %d", func.fn_name, self.profile.name, pending.tx_hash_hex, pending.nonce)
        return pending

    def await_confirmation(
        self,
        pending: PendingTransaction,
        timeout: datetime.timedelta = DEFAULT_CONFIRMATION_TIMEOUT,
    ) -> Receipt:
        """Wait until the transaction is mined or the timeout elapses.

        A reverted transaction is still a confirmed one:
        check :py:attr:`Receipt.success`.

        :raise ConfirmationTimeout:
            No receipt within ``timeout``.
            The transaction may still be mined later.

        The deadline is checked between receipt queries. A query in flight
        when it passes can delay the error by up to the RPC request timeout.
        """
        assert isinstance(timeout, datetime.timedelta)
        logger.info("Waiting %s() tx %s to confirm on %s, timeout is %s", pending.function_name, pending.tx_hash_hex, self.profile.name, timeout)

        started = time.monotonic()
        deadline = started + timeout.total_seconds()
        poll_delay = self.receipt_poll_delay.total_seconds()

        while True:
            try:
                receipt = self.web3.eth.get_transaction_receipt(pending.tx_hash)
            except TransactionNotFound as e:
                logger.debug("Transaction not found yet: %s", e)
                receipt = None

            if receipt:
                break

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConfirmationTimeout(f"Transaction {pending.tx_hash_hex} on {self.profile.name} not confirmed after {timeout} ({timeout.total_seconds()}s)")

            time.sleep(min(poll_delay, remaining))

        revert_reason = None
        if receipt["status"] != 1:
            revert_reason = self._fetch_revert_reason(pending.tx_hash)

        result = Receipt.from_web3(receipt, revert_reason)
        logger.info(
            "Transaction %s confirmed on %s, block %d, gas used %d, success %s, took %.1fs",
            result.tx_hash,
            self.profile.name,
            result.block_number,
            result.gas_used,
            result.success,
            time.monotonic() - started,
        )
        return result

    def transact(
        self,
        func: ContractFunction,
        gas_plan: GasPlan,
        timeout: datetime.timedelta = DEFAULT_CONFIRMATION_TIMEOUT,
    ) -> Receipt:
        """Broadcast a call and wait for a successful receipt.

        :raise ContractCallReverted:
            The transaction was mined but reverted
        """
        pending = self.submit_call(func, gas_plan)
        receipt = self.await_confirmation(pending, timeout)
        if not receipt.success:
            raise ContractCallReverted(
                f"{func.fn_name}() transaction {receipt.tx_hash} reverted on {self.profile.name}: {receipt.revert_reason}",
                reason=receipt.revert_reason,
                tx_hash=receipt.tx_hash,
            )
        return receipt

    def _fetch_revert_reason(self, tx_hash: HexBytes) -> str:
        try:
            return fetch_transaction_revert_reason(self.web3, tx_hash)
        except Exception as e:
            logger.warning("Revert reason lookup failed for %s: %s", Web3.to_hex(tx_hash), e)
            return UNKNOWN_REVERT_REASON
