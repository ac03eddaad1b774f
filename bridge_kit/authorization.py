"""Authorization for the bridge to move the sender's tokens.

Two variants behind one interface, chosen by configuration when the
orchestrator is constructed:

- :py:class:`AllowanceAuthorization`: on-chain ``approve()`` and wait for it

- :py:class:`PermitAuthorization`: off-chain EIP-2612 signature, no transaction

The orchestrator only looks at the grant type to pick the bridge entry point.
"""

import datetime
import enum
import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from eth_typing import HexAddress
from web3 import Web3

from bridge_kit.constants import DEFAULT_CONFIRMATION_TIMEOUT, DEFAULT_PERMIT_DEADLINE, NO_APPROVAL_NEEDED
from bridge_kit.gas import GasPricingStrategy
from bridge_kit.gateway import ChainGateway, Receipt, convert_to_raw
from bridge_kit.permit import construct_permit_message, sign_permit

logger = logging.getLogger(__name__)


class AuthorizationMode(enum.Enum):
    """How we authorize the bridge."""

    #: Sign an EIP-2612 permit
    permit = "permit"

    #: Approve on-chain before the burn
    preapproval = "preapproval"


class AuthorizationGrant:
    """Proof that the bridge may move the sender's funds."""


@dataclass(frozen=True, slots=True)
class AllowanceGrant(AuthorizationGrant):
    """The spender has an on-chain allowance."""

    #: Approval transaction hash, or :py:data:`bridge_kit.constants.NO_APPROVAL_NEEDED`
    tx_hash: str

    #: Approval receipt, if we sent one
    receipt: Optional[Receipt] = None

    @property
    def approval_sent(self) -> bool:
        return self.tx_hash != NO_APPROVAL_NEEDED


@dataclass(frozen=True, slots=True)
class PermitSignature(AuthorizationGrant):
    """Detached EIP-2612 signature for a one-time spend."""

    #: UNIX timestamp
    deadline: int

    v: int

    r: bytes

    s: bytes

    def as_tuple(self) -> tuple:
        """Permit params tuple as the bridge contract takes it."""
        return (self.deadline, self.v, self.r, self.s)


class AuthorizationProvider(ABC):
    """Produce a grant for the spender to move ``amount`` of the signer's USDC."""

    @abstractmethod
    def authorize(self, gateway: ChainGateway, spender: HexAddress | str, amount: Decimal) -> AuthorizationGrant:
        """Authorize a spend on the gateway's chain.

        :param gateway:
            Source chain. The signer is the gateway's wallet.

        :param spender:
            The bridge contract

        :param amount:
            Human readable USDC amount
        """


class AllowanceAuthorization(AuthorizationProvider):
    """Approve exactly the transferred amount on-chain.

    We never approve an unlimited amount, to bound what a compromised spender can take.
    """

    def __init__(
        self,
        gas_strategy: GasPricingStrategy | None = None,
        confirmation_timeout: datetime.timedelta = DEFAULT_CONFIRMATION_TIMEOUT,
    ):
        self.gas_strategy = gas_strategy or GasPricingStrategy()
        self.confirmation_timeout = confirmation_timeout

    def authorize(self, gateway: ChainGateway, spender: HexAddress | str, amount: Decimal) -> AllowanceGrant:
        current_allowance = gateway.get_allowance(gateway.address, spender)
        if current_allowance >= amount:
            logger.info("Sufficient allowance already present: %s, needed %s", current_allowance, amount)
            return AllowanceGrant(tx_hash=NO_APPROVAL_NEEDED)

        logger.info("Approval needed. Current allowance: %s, approving %s to %s", current_allowance, amount, spender)
        approve_call = gateway.token_contract.functions.approve(
            Web3.to_checksum_address(spender),
            convert_to_raw(amount),
        )
        gas_plan = self.gas_strategy.estimate(gateway, approve_call)
        receipt = gateway.transact(approve_call, gas_plan, self.confirmation_timeout)
        return AllowanceGrant(tx_hash=receipt.tx_hash, receipt=receipt)


class PermitAuthorization(AuthorizationProvider):
    """Sign an EIP-2612 permit. No transactions."""

    def __init__(self, deadline: datetime.timedelta = DEFAULT_PERMIT_DEADLINE):
        self.deadline = deadline

    def authorize(self, gateway: ChainGateway, spender: HexAddress | str, amount: Decimal) -> PermitSignature:
        owner = gateway.address

        with ThreadPoolExecutor(max_workers=2) as executor:
            name_future = executor.submit(gateway.fetch_token_name)
            nonce_future = executor.submit(gateway.fetch_permit_nonce, owner)
            token_name = name_future.result()
            nonce = nonce_future.result()

        token_version = gateway.fetch_token_version()
        deadline = int(time.time() + self.deadline.total_seconds())

        data = construct_permit_message(
            chain_id=gateway.chain_id,
            token_address=gateway.profile.token_address,
            token_name=token_name,
            token_version=token_version,
            owner=owner,
            spender=spender,
            value=convert_to_raw(amount),
            nonce=nonce,
            deadline=deadline,
        )

        v, r, s = sign_permit(gateway.wallet.account, data)
        logger.info("Permit signed for %s, token %s version %s, nonce %d, deadline %d", spender, token_name, data["domain"]["version"], nonce, deadline)
        return PermitSignature(deadline=deadline, v=v, r=r, s=s)


def create_authorization_provider(
    mode: AuthorizationMode,
    gas_strategy: GasPricingStrategy | None = None,
    confirmation_timeout: datetime.timedelta = DEFAULT_CONFIRMATION_TIMEOUT,
    permit_deadline: datetime.timedelta = DEFAULT_PERMIT_DEADLINE,
) -> AuthorizationProvider:
    """Pick the authorization variant for this run."""
    if mode == AuthorizationMode.permit:
        return PermitAuthorization(deadline=permit_deadline)
    elif mode == AuthorizationMode.preapproval:
        return AllowanceAuthorization(gas_strategy=gas_strategy, confirmation_timeout=confirmation_timeout)
    raise ValueError(f"Unknown authorization mode: {mode}")
