"""Cross-chain transfer state machine.

:py:class:`TransferOrchestrator` drives one transfer through

``idle -> checking_balance -> authorizing -> budgeting_burn -> burning ->
awaiting_attestation -> budgeting_mint -> minting -> complete``

Any failure moves the transfer to ``failed`` and raises :py:class:`bridge_kit.exceptions.TransferFailed`.
Nothing is rolled back. If the burn went through, use :py:meth:`TransferOrchestrator.resume`
with the burn transaction hash to attest and mint later.

Example:

.. code-block:: python

    orchestrator = create_transfer_orchestrator(load_config())
    outcome = orchestrator.execute(
        TransferRequest(
            source="sepolia",
            destination="base_sepolia",
            amount=Decimal("1.0"),
            recipient=orchestrator.get_gateway("sepolia").address,
            speed=TransferSpeed.fast,
        )
    )
"""

import datetime
import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from eth_typing import HexAddress

from bridge_kit.attestation import AttestationPoller, AttestationRecord
from bridge_kit.authorization import AuthorizationGrant, AuthorizationProvider, PermitSignature
from bridge_kit.bridge import (
    TransferSpeed,
    build_bridge_call_params,
    prepare_bridge_with_permit,
    prepare_bridge_with_preapproval,
    prepare_receive_message,
)
from bridge_kit.constants import DEFAULT_CONFIRMATION_TIMEOUT, DEFAULT_MIN_NATIVE_BALANCE, USDC_DECIMALS
from bridge_kit.exceptions import InsufficientBalance, TransferFailed
from bridge_kit.gas import GasPricingStrategy
from bridge_kit.gateway import BalanceSnapshot, ChainGateway, Receipt

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TransferRequest:
    """What to move and where.

    Amounts are human readable USDC.
    """

    #: Source chain name
    source: str

    #: Destination chain name
    destination: str

    amount: Decimal

    #: Who receives the minted USDC on the destination chain
    recipient: HexAddress | str

    speed: TransferSpeed = TransferSpeed.standard

    #: Bridging kit fee, see ``fee_is_bips``
    fee: Decimal = Decimal(0)

    #: Defaults to the sender
    fee_recipient: Optional[HexAddress | str] = None

    #: Is ``fee`` in basis points instead of USDC
    fee_is_bips: bool = False

    #: Only this address may relay the mint. ``None`` lets anyone relay.
    destination_caller: Optional[HexAddress | str] = None

    #: The most Circle may keep.
    #:
    #: ``None`` allows everything except one raw unit.
    max_fee: Optional[Decimal] = None

    def __post_init__(self):
        assert isinstance(self.amount, Decimal), f"Amount must be Decimal, got {type(self.amount)}"
        if self.amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {self.amount}")
        if self.amount != self.amount.quantize(Decimal(1).scaleb(-USDC_DECIMALS)):
            raise ValueError(f"Transfer amount {self.amount} has more than {USDC_DECIMALS} decimals")
        if self.source == self.destination:
            raise ValueError(f"Source and destination are both {self.source}")
        if self.fee < 0:
            raise ValueError(f"Negative fee: {self.fee}")
        if self.fee_is_bips and self.fee != self.fee.to_integral_value():
            raise ValueError(f"Fee in basis points must be a whole number, got {self.fee}")
        if self.max_fee is not None and not (0 <= self.max_fee < self.amount):
            raise ValueError(f"max_fee must be below amount: max_fee {self.max_fee}, amount {self.amount}")


class TransferState(enum.Enum):
    """Where a transfer is at."""

    idle = "idle"
    checking_balance = "checking_balance"
    authorizing = "authorizing"
    budgeting_burn = "budgeting_burn"
    burning = "burning"
    awaiting_attestation = "awaiting_attestation"
    budgeting_mint = "budgeting_mint"
    minting = "minting"
    complete = "complete"

    #: Absorbing
    failed = "failed"


@dataclass(slots=True)
class TransferOutcome:
    """Everything we learnt during a transfer.

    Filled in step by step. On failure the fields
    reached so far are set.
    """

    #: ``None`` for resumed transfers
    request: Optional[TransferRequest] = None

    state: TransferState = TransferState.idle

    #: States visited, in order
    history: list[TransferState] = field(default_factory=list)

    #: Balance snapshots by chain name
    balances_before: dict[str, BalanceSnapshot] = field(default_factory=dict)

    grant: Optional[AuthorizationGrant] = None

    burn_receipt: Optional[Receipt] = None

    attestation: Optional[AttestationRecord] = None

    mint_receipt: Optional[Receipt] = None

    balances_after: dict[str, BalanceSnapshot] = field(default_factory=dict)

    #: Burn transaction hash given to :py:meth:`TransferOrchestrator.resume`
    resumed_from: Optional[str] = None

    #: The state where we failed
    failed_at: Optional[TransferState] = None

    #: Human readable failure
    failure_reason: Optional[str] = None

    @property
    def burn_tx_hash(self) -> Optional[str]:
        """Needed to resume a transfer that failed after the burn."""
        if self.burn_receipt:
            return self.burn_receipt.tx_hash
        return self.resumed_from


class TransferOrchestrator:
    """Run one burn-attest-mint transfer.

    All mutating calls are sequential. One instance drives one transfer.
    """

    def __init__(
        self,
        gateways: dict[str, ChainGateway],
        authorization: AuthorizationProvider,
        attestation_poller: AttestationPoller,
        gas_strategy: GasPricingStrategy | None = None,
        confirmation_timeout: datetime.timedelta = DEFAULT_CONFIRMATION_TIMEOUT,
        min_native_balance: Decimal = Decimal(DEFAULT_MIN_NATIVE_BALANCE),
        attestation_timeout: float | None = None,
    ):
        """
        :param gateways:
            One gateway per chain, by chain name

        :param authorization:
            Allowance or permit, fixed for the run

        :param min_native_balance:
            Refuse to start if the source wallet holds less gas money

        :param attestation_timeout:
            Seconds to wait for the attestation. ``None`` waits until the service answers
            or :py:meth:`cancel` is called.
        """
        assert len(gateways) > 0, "No chains configured"
        self.gateways = gateways
        self.authorization = authorization
        self.attestation_poller = attestation_poller
        self.gas_strategy = gas_strategy or GasPricingStrategy()
        self.confirmation_timeout = confirmation_timeout
        self.min_native_balance = min_native_balance
        self.attestation_timeout = attestation_timeout
        self.cancel_event = threading.Event()
        self.outcome: Optional[TransferOutcome] = None

    def __repr__(self):
        state = self.outcome.state.value if self.outcome else TransferState.idle.value
        return f"<TransferOrchestrator chains:{list(self.gateways)} state:{state}>"

    def get_gateway(self, chain_name: str) -> ChainGateway:
        try:
            return self.gateways[chain_name]
        except KeyError:
            raise ValueError(f"Chain {chain_name} not configured. We have: {list(self.gateways)}") from None

    def cancel(self):
        """Stop waiting for the attestation.

        Safe to call from another thread. Transactions already broadcast are not affected.
        """
        logger.info("Transfer cancellation requested")
        self.cancel_event.set()

    def execute(self, request: TransferRequest) -> TransferOutcome:
        """Run the transfer to completion.

        :raise TransferFailed:
            Any step failed. The cause is chained.

        :raise ValueError:
            Source or destination chain is not configured, or the source cannot burn.
            Raised before the transfer starts, the orchestrator can still be used.
        """
        source = self.get_gateway(request.source)
        destination = self.get_gateway(request.destination)
        if not source.profile.can_burn:
            raise ValueError(f"{source.profile.name} has no bridging kit deployment and cannot be a transfer source")

        outcome = self._start(TransferOutcome(request=request))
        logger.info("Starting transfer of %s USDC from %s to %s, speed %s", request.amount, request.source, request.destination, request.speed.value)

        try:
            self._transition(outcome, TransferState.checking_balance)
            outcome.balances_before = self._snapshot_balances(source, destination)
            self._check_balances(request, outcome.balances_before[source.profile.name], source)

            self._transition(outcome, TransferState.authorizing)
            outcome.grant = self.authorization.authorize(source, source.profile.bridge_address, request.amount)

            self._transition(outcome, TransferState.budgeting_burn)
            params = build_bridge_call_params(request, source.profile, destination.profile, sender=source.address)
            if isinstance(outcome.grant, PermitSignature):
                burn_fn = prepare_bridge_with_permit(source.bridge_contract, params, outcome.grant)
            else:
                burn_fn = prepare_bridge_with_preapproval(source.bridge_contract, params)
            plan = self.gas_strategy.estimate(source, burn_fn)
            plan = self.gas_strategy.inflate(source, plan)
            self.gas_strategy.check_affordability(source, source.address, plan)

            self._transition(outcome, TransferState.burning)
            outcome.burn_receipt = source.transact(burn_fn, plan, self.confirmation_timeout)
            logger.info("Burn confirmed: %s, block %d", outcome.burn_receipt.tx_hash, outcome.burn_receipt.block_number)

            self._attest_and_mint(outcome, source, destination, outcome.burn_receipt.tx_hash)
            self._transition(outcome, TransferState.complete)
        except Exception as e:
            self._fail(outcome, e)

        outcome.balances_after = self._snapshot_final_balances(source, destination)

        return outcome

    def resume(self, source_chain: str, destination_chain: str, burn_tx_hash: str) -> TransferOutcome:
        """Attest and mint a burn that already went through.

        Use after a transfer failed past the ``burning`` state.

        :param burn_tx_hash:
            See :py:attr:`TransferOutcome.burn_tx_hash`

        :raise TransferFailed:
            Attestation or mint failed
        """
        source = self.get_gateway(source_chain)
        destination = self.get_gateway(destination_chain)
        outcome = self._start(TransferOutcome(resumed_from=burn_tx_hash))
        logger.info("Resuming transfer from %s to %s, burn tx %s", source_chain, destination_chain, burn_tx_hash)

        try:
            self._attest_and_mint(outcome, source, destination, burn_tx_hash)
            self._transition(outcome, TransferState.complete)
        except Exception as e:
            self._fail(outcome, e)

        outcome.balances_after = self._snapshot_final_balances(source, destination)

        return outcome

    def _start(self, outcome: TransferOutcome) -> TransferOutcome:
        assert self.outcome is None, f"{self} already ran a transfer, create a new orchestrator"
        self.outcome = outcome
        return outcome

    def _attest_and_mint(self, outcome: TransferOutcome, source: ChainGateway, destination: ChainGateway, burn_tx_hash: str):
        self._transition(outcome, TransferState.awaiting_attestation)
        outcome.attestation = self.attestation_poller.await_attestation(
            burn_tx_hash,
            source.profile.domain,
            timeout=self.attestation_timeout,
            cancel_event=self.cancel_event,
        )

        self._transition(outcome, TransferState.budgeting_mint)
        mint_fn = prepare_receive_message(
            destination.message_transmitter,
            outcome.attestation.message,
            outcome.attestation.attestation,
        )
        plan = self.gas_strategy.estimate(destination, mint_fn)

        self._transition(outcome, TransferState.minting)
        outcome.mint_receipt = destination.transact(mint_fn, plan, self.confirmation_timeout)
        logger.info("Mint confirmed: %s, block %d", outcome.mint_receipt.tx_hash, outcome.mint_receipt.block_number)

    def _snapshot_balances(self, source: ChainGateway, destination: ChainGateway) -> dict[str, BalanceSnapshot]:
        with ThreadPoolExecutor(max_workers=2) as executor:
            source_future = executor.submit(source.fetch_balances, source.address)
            destination_future = executor.submit(destination.fetch_balances, destination.address)
            snapshots = [source_future.result(), destination_future.result()]

        for snapshot in snapshots:
            logger.info("Balances on %s: %s USDC, %s native", snapshot.chain, snapshot.token, snapshot.native)

        return {s.chain: s for s in snapshots}

    def _snapshot_final_balances(self, source: ChainGateway, destination: ChainGateway) -> dict[str, BalanceSnapshot]:
        # The mint is already confirmed, a failed read must not fail the transfer
        try:
            return self._snapshot_balances(source, destination)
        except Exception as e:
            logger.warning("Could not read balances after the transfer completed: %s", e, exc_info=e)
            return {}

    def _check_balances(self, request: TransferRequest, balances: BalanceSnapshot, source: ChainGateway):
        if balances.token < request.amount:
            raise InsufficientBalance(f"Insufficient USDC on {source.profile.name}. Required: {request.amount}, Have: {balances.token}")

        if balances.native < self.min_native_balance:
            symbol = source.profile.native_currency
            raise InsufficientBalance(f"Insufficient native token on {source.profile.name}. Required: {self.min_native_balance} {symbol}, Have: {balances.native} {symbol}")

    def _transition(self, outcome: TransferOutcome, state: TransferState):
        logger.info("Transfer state %s -> %s", outcome.state.value, state.value)
        outcome.state = state
        outcome.history.append(state)

    def _fail(self, outcome: TransferOutcome, e: Exception):
        failed_at = outcome.state
        outcome.failed_at = failed_at
        outcome.failure_reason = f"{e.__class__.__name__}: {e}"
        self._transition(outcome, TransferState.failed)
        logger.error("Transfer failed at %s: %s", failed_at.value, outcome.failure_reason)
        if outcome.burn_tx_hash and not outcome.mint_receipt:
            logger.error("USDC was burnt in %s but not minted, resume with this transaction hash", outcome.burn_tx_hash)
        raise TransferFailed(f"Transfer failed at {failed_at.value}: {outcome.failure_reason}", state=failed_at, outcome=outcome) from e
