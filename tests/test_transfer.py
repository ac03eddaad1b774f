"""Transfer orchestrator state machine with mocked chains and attestation service."""

from decimal import Decimal
from unittest.mock import Mock

import pytest
import requests

from bridge_kit.attestation import AttestationPoller, AttestationRecord, AttestationStatus
from bridge_kit.authorization import AllowanceAuthorization, AllowanceGrant, AuthorizationProvider, PermitAuthorization
from bridge_kit.bridge import TransferSpeed
from bridge_kit.chain import DEFAULT_CHAIN_PROFILES
from bridge_kit.constants import NO_APPROVAL_NEEDED
from bridge_kit.exceptions import (
    AttestationServiceFailure,
    ConfirmationTimeout,
    ContractCallReverted,
    InsufficientBalance,
    InsufficientGasFunds,
    TransferFailed,
)
from bridge_kit.gateway import BalanceSnapshot, Receipt
from bridge_kit.transfer import TransferOrchestrator, TransferRequest, TransferState

BURN_TX = "0x" + "b1" * 32
MINT_TX = "0x" + "a1" * 32


@pytest.fixture
def source(sepolia, account, mock_gateway_factory):
    gateway = mock_gateway_factory(sepolia, account, token_balance=Decimal("10.0"), native_balance=Decimal("0.5"))
    gateway.fetch_token_name.return_value = "USDC"
    gateway.fetch_token_version.return_value = "2"
    gateway.fetch_permit_nonce.return_value = 0
    gateway.transact.return_value = Receipt(tx_hash=BURN_TX, block_number=100, gas_used=180_000, success=True)
    return gateway


@pytest.fixture
def destination(base_sepolia, account, mock_gateway_factory):
    gateway = mock_gateway_factory(base_sepolia, account, token_balance=Decimal(0), native_balance=Decimal("0.2"))
    gateway.transact.return_value = Receipt(tx_hash=MINT_TX, block_number=200, gas_used=120_000, success=True)
    return gateway


@pytest.fixture
def attestation() -> AttestationRecord:
    return AttestationRecord(message=b"\x01" * 100, attestation=b"\x02" * 65, status=AttestationStatus.complete)


@pytest.fixture
def poller(attestation) -> Mock:
    poller = Mock(spec=AttestationPoller)
    poller.await_attestation.return_value = attestation
    return poller


@pytest.fixture
def gateways(source, destination) -> dict:
    return {"sepolia": source, "base_sepolia": destination}


def make_request(recipient: str, amount="1.0", speed=TransferSpeed.fast) -> TransferRequest:
    return TransferRequest(
        source="sepolia",
        destination="base_sepolia",
        amount=Decimal(amount),
        recipient=recipient,
        speed=speed,
    )


def test_end_to_end_fast_permit(gateways, source, destination, poller, account):
    """Balance 10.0, request 1.0, fast, permit: everything succeeds first time."""
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller)
    outcome = orchestrator.execute(make_request(account.address))

    assert outcome.state == TransferState.complete
    assert outcome.burn_receipt.success
    assert outcome.mint_receipt.success
    assert outcome.attestation.status == AttestationStatus.complete
    assert outcome.burn_tx_hash == BURN_TX
    assert outcome.history == [
        TransferState.checking_balance,
        TransferState.authorizing,
        TransferState.budgeting_burn,
        TransferState.burning,
        TransferState.awaiting_attestation,
        TransferState.budgeting_mint,
        TransferState.minting,
        TransferState.complete,
    ]
    assert outcome.balances_before["sepolia"].token == Decimal("10.0")
    assert set(outcome.balances_after) == {"sepolia", "base_sepolia"}

    # Burn went through the permit entry point with fast finality and default maxFee
    burn_fn, burn_plan = source.transact.call_args[0][:2]
    assert burn_fn.fn_name == "bridgeWithPermit"
    bridge_params, permit_params = burn_fn.args
    assert bridge_params[0] == 1_000_000
    assert bridge_params[2] == 1000
    assert bridge_params[3] == 999_999
    assert permit_params[0] == outcome.grant.deadline

    # Burn gas was inflated: 200k * 1.2 * 1.5, 3x 10 gwei
    assert burn_plan.gas_limit == 360_000
    assert burn_plan.max_fee_per_gas == 30 * 10**9

    poller.await_attestation.assert_called_once_with(BURN_TX, 0, timeout=None, cancel_event=orchestrator.cancel_event)

    # Mint with a plain estimate
    mint_fn, mint_plan = destination.transact.call_args[0][:2]
    assert mint_fn.fn_name == "receiveMessage"
    assert mint_fn.args == (b"\x01" * 100, b"\x02" * 65)
    assert mint_plan.gas_limit == 240_000
    assert mint_plan.max_fee_per_gas == 12 * 10**9


def test_preapproval_uses_preapproval_entry_point(gateways, source, poller, account):
    authorization = Mock(spec=AuthorizationProvider)
    authorization.authorize.return_value = AllowanceGrant(tx_hash=NO_APPROVAL_NEEDED)

    orchestrator = TransferOrchestrator(gateways, authorization, poller)
    outcome = orchestrator.execute(make_request(account.address, speed=TransferSpeed.standard))

    assert outcome.state == TransferState.complete
    authorization.authorize.assert_called_once_with(source, source.profile.bridge_address, Decimal("1.0"))
    burn_fn = source.transact.call_args[0][0]
    assert burn_fn.fn_name == "bridgeWithPreapproval"
    assert burn_fn.args[0][2] == 2000


@pytest.mark.parametrize("balance", ["0", "0.5", "0.999999"])
def test_insufficient_balance(gateways, source, poller, account, balance):
    """Nothing is authorized or sent and the error names both figures."""
    source.fetch_balances.return_value = BalanceSnapshot(
        chain="sepolia",
        address=account.address,
        token=Decimal(balance),
        native=Decimal(1),
    )
    authorization = Mock(spec=AuthorizationProvider)
    orchestrator = TransferOrchestrator(gateways, authorization, poller)

    with pytest.raises(TransferFailed) as exc_info:
        orchestrator.execute(make_request(account.address))

    e = exc_info.value
    assert e.state == TransferState.checking_balance
    assert isinstance(e.__cause__, InsufficientBalance)
    assert "Required: 1.0" in str(e)
    assert f"Have: {balance}" in str(e)
    assert e.outcome.state == TransferState.failed
    authorization.authorize.assert_not_called()
    source.transact.assert_not_called()
    source.submit_call.assert_not_called()
    poller.await_attestation.assert_not_called()


def test_insufficient_native_balance(gateways, source, poller, account):
    source.fetch_balances.return_value = BalanceSnapshot(
        chain="sepolia",
        address=account.address,
        token=Decimal(10),
        native=Decimal("0.001"),
    )
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller)

    with pytest.raises(TransferFailed) as exc_info:
        orchestrator.execute(make_request(account.address))

    assert isinstance(exc_info.value.__cause__, InsufficientBalance)
    assert "ETH" in str(exc_info.value)
    source.transact.assert_not_called()


def test_cannot_afford_burn(gateways, source, poller, account):
    # Passes the minimum balance check but not the inflated burn plan
    source.get_native_balance.return_value = Decimal("0.011")
    source.fetch_balances.return_value = BalanceSnapshot(
        chain="sepolia",
        address=account.address,
        token=Decimal(10),
        native=Decimal("0.011"),
    )
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller)

    with pytest.raises(TransferFailed) as exc_info:
        orchestrator.execute(make_request(account.address))

    assert exc_info.value.state == TransferState.budgeting_burn
    assert isinstance(exc_info.value.__cause__, InsufficientGasFunds)
    source.transact.assert_not_called()


def test_burn_reverted(gateways, source, destination, poller, account):
    source.transact.side_effect = ContractCallReverted("reverted", reason="FiatTokenV2: permit is expired", tx_hash=BURN_TX)
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller)

    with pytest.raises(TransferFailed) as exc_info:
        orchestrator.execute(make_request(account.address))

    assert exc_info.value.state == TransferState.burning
    assert exc_info.value.outcome.burn_receipt is None
    poller.await_attestation.assert_not_called()
    destination.transact.assert_not_called()


def test_attestation_failure_after_burn(gateways, destination, poller, account):
    """The burn hash is kept so the transfer can be resumed."""
    poller.await_attestation.side_effect = AttestationServiceFailure("HTTP 500")
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller)

    with pytest.raises(TransferFailed) as exc_info:
        orchestrator.execute(make_request(account.address))

    outcome = exc_info.value.outcome
    assert exc_info.value.state == TransferState.awaiting_attestation
    assert outcome.burn_tx_hash == BURN_TX
    assert outcome.failed_at == TransferState.awaiting_attestation
    assert "AttestationServiceFailure" in outcome.failure_reason
    destination.transact.assert_not_called()


def test_resume(gateways, source, destination, poller):
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller, attestation_timeout=600)
    outcome = orchestrator.resume("sepolia", "base_sepolia", BURN_TX)

    assert outcome.state == TransferState.complete
    assert outcome.burn_tx_hash == BURN_TX
    assert outcome.mint_receipt.tx_hash == MINT_TX
    assert outcome.history[0] == TransferState.awaiting_attestation
    poller.await_attestation.assert_called_once_with(BURN_TX, 0, timeout=600, cancel_event=orchestrator.cancel_event)
    source.transact.assert_not_called()


def test_mint_reverted_can_be_resumed(gateways, source, destination, poller, account):
    destination.transact.side_effect = ContractCallReverted("reverted", reason="Nonce already used", tx_hash=MINT_TX)
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller)

    with pytest.raises(TransferFailed) as exc_info:
        orchestrator.execute(make_request(account.address))

    outcome = exc_info.value.outcome
    assert exc_info.value.state == TransferState.minting
    assert outcome.state == TransferState.failed
    assert outcome.burn_tx_hash == BURN_TX
    assert outcome.mint_receipt is None
    assert outcome.balances_after == {}

    destination.transact.side_effect = None
    outcome = TransferOrchestrator(gateways, PermitAuthorization(), poller).resume("sepolia", "base_sepolia", outcome.burn_tx_hash)
    assert outcome.state == TransferState.complete
    assert outcome.mint_receipt.tx_hash == MINT_TX
    assert source.transact.call_count == 1


@pytest.mark.parametrize("chain", ["source", "destination"])
def test_confirmation_timeout_is_not_retried(gateways, source, destination, poller, account, chain):
    gateway = source if chain == "source" else destination
    gateway.transact.side_effect = ConfirmationTimeout("Transaction not confirmed in 0:03:00")
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller)

    with pytest.raises(TransferFailed) as exc_info:
        orchestrator.execute(make_request(account.address))

    assert isinstance(exc_info.value.__cause__, ConfirmationTimeout)
    assert gateway.transact.call_count == 1
    if chain == "source":
        assert exc_info.value.state == TransferState.burning
        destination.transact.assert_not_called()
    else:
        assert exc_info.value.state == TransferState.minting
        assert exc_info.value.outcome.burn_tx_hash == BURN_TX


def test_balance_read_failure_after_mint_still_completes(gateways, destination, poller, account):
    before = destination.fetch_balances.return_value
    destination.fetch_balances.side_effect = [before, requests.ConnectionError("Connection reset by peer")]
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller)

    outcome = orchestrator.execute(make_request(account.address))

    assert outcome.state == TransferState.complete
    assert outcome.history[-1] == TransferState.complete
    assert outcome.mint_receipt.success
    assert outcome.failed_at is None
    assert outcome.balances_after == {}


def test_resume_balance_read_failure_still_completes(gateways, source, poller):
    source.fetch_balances.side_effect = requests.ConnectionError("Connection refused")
    outcome = TransferOrchestrator(gateways, PermitAuthorization(), poller).resume("sepolia", "base_sepolia", BURN_TX)
    assert outcome.state == TransferState.complete
    assert outcome.balances_after == {}


def test_cancel(gateways, poller):
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller)
    assert not orchestrator.cancel_event.is_set()
    orchestrator.cancel()
    assert orchestrator.cancel_event.is_set()


def test_one_transfer_per_orchestrator(gateways, poller, account):
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller)
    orchestrator.execute(make_request(account.address))
    with pytest.raises(AssertionError):
        orchestrator.execute(make_request(account.address))


def test_destination_only_chain_cannot_be_source(gateways, poller, account, mock_gateway_factory):
    fuji = DEFAULT_CHAIN_PROFILES["avalanche_fuji"].with_rpc_url("http://localhost:8547")
    gateways["avalanche_fuji"] = mock_gateway_factory(fuji, account)
    orchestrator = TransferOrchestrator(gateways, AllowanceAuthorization(), poller)
    request = TransferRequest(source="avalanche_fuji", destination="sepolia", amount=Decimal(1), recipient=account.address)
    with pytest.raises(ValueError):
        orchestrator.execute(request)

    # Rejected before the transfer starts
    assert orchestrator.outcome is None


def test_unknown_chain(gateways, poller):
    orchestrator = TransferOrchestrator(gateways, PermitAuthorization(), poller)
    with pytest.raises(ValueError, match="not configured"):
        orchestrator.get_gateway("mainnet")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"amount": Decimal(0)},
        {"amount": Decimal("-1")},
        {"amount": Decimal("0.0000001")},
        {"destination": "sepolia"},
        {"max_fee": Decimal("1.0")},
        {"fee": Decimal("1.5"), "fee_is_bips": True},
        {"fee": Decimal("-1")},
    ],
)
def test_request_validation(account, kwargs):
    params = dict(source="sepolia", destination="base_sepolia", amount=Decimal("1.0"), recipient=account.address)
    params.update(kwargs)
    with pytest.raises(ValueError):
        TransferRequest(**params)


def test_whole_bips_fee_accepted(account):
    request = TransferRequest(
        source="sepolia",
        destination="base_sepolia",
        amount=Decimal("1.0"),
        recipient=account.address,
        fee=Decimal("15.0"),
        fee_is_bips=True,
    )
    assert request.fee == 15
