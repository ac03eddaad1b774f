"""Gas pricing for bridge transactions.

`Web3.py no longer support gas price strategies post London hard work <https://web3py.readthedocs.io/en/stable/gas_price.html>`_,
so we budget every call ourselves.

- :py:meth:`GasPricingStrategy.estimate` never fails: if the dry run fails
  we fall back to a fixed conservative :py:class:`GasPlan`

- :py:meth:`GasPricingStrategy.inflate` overpays for the latency sensitive burn call

- :py:meth:`GasPricingStrategy.check_affordability` fails fast before we broadcast
  anything the wallet cannot pay for
"""

import enum
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from pprint import pformat
from typing import TYPE_CHECKING, Optional

from eth_typing import HexAddress
from web3 import Web3
from web3.contract.contract import ContractFunction

from bridge_kit.exceptions import InsufficientGasFunds

if TYPE_CHECKING:
    from bridge_kit.gateway import ChainGateway


logger = logging.getLogger(__name__)

#: 1 gwei in wei
GWEI = 10**9

#: Safety buffer on top of the dry run gas estimate, in percents
GAS_LIMIT_BUFFER_PERCENT = 120

#: Priority fee we bid for normal calls
PRIORITY_FEE = 2 * GWEI

#: Used when the dry run fails
FALLBACK_GAS_LIMIT = 500_000

#: Used when the dry run fails
FALLBACK_MAX_FEE_PER_GAS = 30 * GWEI

#: Used when the dry run fails
FALLBACK_PRIORITY_FEE = 2 * GWEI

#: Gas limit multiplier for inflated plans, in percents
INFLATED_GAS_LIMIT_PERCENT = 150

#: Fee multiplier over the freshly queried fee for inflated plans
INFLATED_FEE_MULTIPLIER = 3

#: Priority fee we bid for inflated plans
INFLATED_PRIORITY_FEE = 3 * GWEI

#: Extra margin the wallet must hold over the worst case gas cost, in percents
AFFORDABILITY_BUFFER_PERCENT = 110


class GasPriceMethod(enum.Enum):
    """What method we did use for setting the gas price."""

    #: Legacy chains
    legacy = "legacy"

    #: Post London hard work
    london = "london"


@dataclass
class GasPriceSuggestion:
    """Gas price details as read from the node.

    - EIP-1559 London hard fork chains (Ethereum mainnet, Base)

    - Legacy EVM
    """

    #: How the gas price was determined
    method: GasPriceMethod

    #: Non London hard fork chains
    legacy_gas_price: Optional[int] = None

    #: London hard fork chains
    base_fee: Optional[int] = None

    #: London hard fork chains
    max_priority_fee_per_gas: Optional[int] = None

    #: London hard fork chains
    max_fee_per_gas: Optional[int] = None

    def __repr__(self):
        return f"<Gas pricing method:{self.method.name} base:{self.base_fee} priority:{self.max_priority_fee_per_gas} max:{self.max_fee_per_gas} legacy:{self.legacy_gas_price}>"

    @property
    def reference_fee(self) -> int:
        """The fee per gas we build our bids on.

        Max fee per gas on London chains, the flat gas price elsewhere.
        """
        if self.max_fee_per_gas is not None:
            return self.max_fee_per_gas
        assert self.legacy_gas_price is not None, f"No fee data: {self}"
        return self.legacy_gas_price


def estimate_gas_price(web3: Web3, method=None) -> GasPriceSuggestion:
    """Read the current fee data from the node."""

    last_block = web3.eth.get_block("latest")
    base_fee = last_block.get("baseFeePerGas")

    if method is None:
        if base_fee is not None:
            method = GasPriceMethod.london
        else:
            method = GasPriceMethod.legacy

    if method == GasPriceMethod.london:
        max_priority_fee_per_gas = web3.eth.max_priority_fee
        max_fee_per_gas = max_priority_fee_per_gas + (2 * base_fee)
        return GasPriceSuggestion(
            method=GasPriceMethod.london,
            base_fee=base_fee,
            max_priority_fee_per_gas=max_priority_fee_per_gas,
            max_fee_per_gas=max_fee_per_gas,
        )
    else:
        return GasPriceSuggestion(method=GasPriceMethod.legacy, legacy_gas_price=web3.eth.gas_price)


@dataclass(frozen=True, slots=True)
class GasPlan:
    """Gas budget for one pending call.

    Derived fresh for every call.
    """

    #: Gas units
    gas_limit: int

    #: Max total fee per unit of gas, wei
    max_fee_per_gas: int

    #: Max priority fee per unit of gas, wei
    max_priority_fee_per_gas: int

    #: Was this plan a hardcoded fallback because the dry run failed
    fallback: bool = False

    def __post_init__(self):
        assert self.gas_limit > 0, f"Bad gas limit: {self.gas_limit}"
        assert self.max_fee_per_gas > 0, f"Bad max fee: {self.max_fee_per_gas}"

    def get_tx_params(self) -> dict:
        """Get gas params as they are applied to ContractFunction.build_transaction()"""
        return {
            "gas": self.gas_limit,
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
        }

    def get_max_cost(self) -> int:
        """Worst case cost of the transaction in wei."""
        return self.gas_limit * self.max_fee_per_gas

    def pformat(self) -> str:
        """Pretty format for logging."""
        data = {
            "Gas limit": f"{self.gas_limit:,}",
            "Max fee per gas": f"{self.max_fee_per_gas / GWEI:.2f}G ({self.max_fee_per_gas:,})",
            "Max priority fee per gas": f"{self.max_priority_fee_per_gas / GWEI:.2f}G ({self.max_priority_fee_per_gas:,})",
            "Fallback": self.fallback,
        }
        return pformat(data)


#: What we use when we cannot estimate
FALLBACK_GAS_PLAN = GasPlan(
    gas_limit=FALLBACK_GAS_LIMIT,
    max_fee_per_gas=FALLBACK_MAX_FEE_PER_GAS,
    max_priority_fee_per_gas=FALLBACK_PRIORITY_FEE,
    fallback=True,
)


class GasPricingStrategy:
    """Budget gas for bridge calls.

    Stateless. One instance can be shared across chains.
    """

    def estimate(self, gateway: "ChainGateway", func: ContractFunction) -> GasPlan:
        """Budget a pending call.

        - Dry runs the call for the gas limit and adds 20% on top

        - Bids :py:data:`PRIORITY_FEE` over the node's reference fee

        :return:
            Always a usable plan. Falls back to :py:data:`FALLBACK_GAS_PLAN`
            if the call would revert or the node is not reachable.
        """
        try:
            price = gateway.fetch_gas_price()
            gas_estimate = gateway.estimate_gas(func)
        except Exception as e:
            logger.warning("Gas estimation failed on %s, using fallback plan: %s", gateway.profile.name, e)
            return FALLBACK_GAS_PLAN

        plan = GasPlan(
            gas_limit=gas_estimate * GAS_LIMIT_BUFFER_PERCENT // 100,
            max_fee_per_gas=price.reference_fee + PRIORITY_FEE,
            max_priority_fee_per_gas=PRIORITY_FEE,
        )
        logger.info("Estimated gas on %s:\n%s", gateway.profile.name, plan.pformat())
        return plan

    def inflate(self, gateway: "ChainGateway", plan: GasPlan) -> GasPlan:
        """Overpay for inclusion.

        Used right before the burn call, as the transfer speed depends on it.

        - Gas limit 1.5x

        - Max fee 3x over the freshly queried reference fee
        """
        try:
            reference_fee = gateway.fetch_gas_price().reference_fee
        except Exception as e:
            logger.warning("Could not refresh gas price on %s, inflating the old plan: %s", gateway.profile.name, e)
            reference_fee = plan.max_fee_per_gas

        max_fee_per_gas = reference_fee * INFLATED_FEE_MULTIPLIER
        priority_fee = INFLATED_PRIORITY_FEE

        # https://github.com/ethereum/go-ethereum/blob/2e478aab98c13577c66b4531ba240a601dbc1516/core/error.go#L87
        if priority_fee > max_fee_per_gas:
            max_fee_per_gas = priority_fee

        inflated = replace(
            plan,
            gas_limit=plan.gas_limit * INFLATED_GAS_LIMIT_PERCENT // 100,
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=priority_fee,
        )
        logger.info("Using high gas parameters on %s:\n%s", gateway.profile.name, inflated.pformat())
        return inflated

    def check_affordability(self, gateway: "ChainGateway", address: HexAddress | str, plan: GasPlan):
        """Check the wallet can pay for the planned call.

        :raise InsufficientGasFunds:
            The native balance does not cover max fee * gas limit * 1.10
        """
        required_wei = plan.get_max_cost() * AFFORDABILITY_BUFFER_PERCENT // 100
        required = Decimal(required_wei) / Decimal(10**18)
        balance = gateway.get_native_balance(address)
        symbol = gateway.profile.native_currency
        if balance < required:
            raise InsufficientGasFunds(f"Insufficient gas funds on {gateway.profile.name}. Required: {required} {symbol}, Have: {balance} {symbol}")
        logger.info("Gas check passed on %s, required %s %s, have %s %s", gateway.profile.name, required, symbol, balance, symbol)
