"""Allowance and permit authorization."""

from decimal import Decimal
from unittest.mock import Mock

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from bridge_kit.authorization import (
    AllowanceAuthorization,
    AllowanceGrant,
    AuthorizationMode,
    PermitAuthorization,
    PermitSignature,
    create_authorization_provider,
)
from bridge_kit.constants import NO_APPROVAL_NEEDED
from bridge_kit.gas import GasPlan
from bridge_kit.gateway import Receipt
from bridge_kit.permit import construct_permit_message


class FakePermitToken:
    """Just enough of an EIP-2612 token to verify permits.

    Recovers the signer from the signature against its own domain
    and its own current nonce, like the real token contract does.
    """

    def __init__(self, address: str, chain_id: int, name: str, version: str | None):
        self.address = address
        self.chain_id = chain_id
        self.name = name
        self.version = version
        self.nonces: dict[str, int] = {}
        self.allowances: dict[tuple[str, str], int] = {}

    def get_nonce(self, owner: str) -> int:
        return self.nonces.get(owner, 0)

    def permit(self, owner: str, spender: str, value: int, deadline: int, v: int, r: bytes, s: bytes):
        data = construct_permit_message(
            chain_id=self.chain_id,
            token_address=self.address,
            token_name=self.name,
            token_version=self.version,
            owner=owner,
            spender=spender,
            value=value,
            nonce=self.get_nonce(owner),
            deadline=deadline,
        )
        signable = encode_typed_data(full_message=data)
        signer = Account.recover_message(signable, vrs=(v, r, s))
        if signer != owner:
            raise ValueError("EIP2612: invalid signature")
        self.nonces[owner] = self.get_nonce(owner) + 1
        self.allowances[(owner, spender)] = value


@pytest.fixture
def token(sepolia) -> FakePermitToken:
    return FakePermitToken(sepolia.token_address, sepolia.chain_id, "USDC", "2")


@pytest.fixture
def gateway(sepolia, account, token, mock_gateway_factory) -> Mock:
    gateway = mock_gateway_factory(sepolia, account)
    gateway.fetch_token_name.side_effect = lambda: token.name
    gateway.fetch_token_version.side_effect = lambda: token.version
    gateway.fetch_permit_nonce.side_effect = token.get_nonce
    return gateway


@pytest.fixture
def spender(sepolia) -> str:
    return sepolia.bridge_address


def test_allowance_already_sufficient(gateway, spender):
    """No approval transaction when the allowance covers the amount."""
    gateway.get_allowance.return_value = Decimal(5)
    gas_strategy = Mock()
    provider = AllowanceAuthorization(gas_strategy=gas_strategy)

    grant = provider.authorize(gateway, spender, Decimal(1))

    assert isinstance(grant, AllowanceGrant)
    assert grant.tx_hash == NO_APPROVAL_NEEDED
    assert not grant.approval_sent
    gateway.transact.assert_not_called()
    gateway.submit_call.assert_not_called()
    gas_strategy.estimate.assert_not_called()


def test_allowance_approves_exact_amount(gateway, spender):
    gateway.get_allowance.return_value = Decimal("0.5")
    approve_call = Mock()
    gateway.token_contract.functions.approve.return_value = approve_call
    plan = GasPlan(gas_limit=60_000, max_fee_per_gas=10**9, max_priority_fee_per_gas=10**9)
    gas_strategy = Mock()
    gas_strategy.estimate.return_value = plan
    receipt = Receipt(tx_hash="0x" + "ab" * 32, block_number=10, gas_used=46_000, success=True)
    gateway.transact.return_value = receipt

    provider = AllowanceAuthorization(gas_strategy=gas_strategy)
    grant = provider.authorize(gateway, spender, Decimal("1.25"))

    # Never unlimited
    gateway.token_contract.functions.approve.assert_called_once_with(Web3.to_checksum_address(spender), 1_250_000)
    assert gateway.transact.call_args[0][:2] == (approve_call, plan)
    assert grant.approval_sent
    assert grant.tx_hash == receipt.tx_hash
    assert grant.receipt == receipt


def test_permit_signature_verifies(gateway, token, account, spender):
    """The token accepts the permit signed against its name, version, chain and address."""
    provider = PermitAuthorization()
    grant = provider.authorize(gateway, spender, Decimal(1))

    assert isinstance(grant, PermitSignature)
    assert grant.v in (27, 28)
    assert len(grant.r) == 32
    assert len(grant.s) == 32

    token.permit(account.address, spender, 1_000_000, grant.deadline, grant.v, grant.r, grant.s)
    assert token.allowances[(account.address, spender)] == 1_000_000


def test_permit_stale_nonce_rejected(gateway, token, account, spender):
    """Replaying a grant after the nonce advanced fails."""
    grant = PermitAuthorization().authorize(gateway, spender, Decimal(1))
    token.permit(account.address, spender, 1_000_000, grant.deadline, grant.v, grant.r, grant.s)
    assert token.get_nonce(account.address) == 1

    with pytest.raises(ValueError, match="invalid signature"):
        token.permit(account.address, spender, 1_000_000, grant.deadline, grant.v, grant.r, grant.s)


def test_permit_default_version(gateway, token, account, spender):
    """Tokens without version() sign with version 1."""
    token.version = None
    grant = PermitAuthorization().authorize(gateway, spender, Decimal(1))

    # Token verifying with version "1" accepts
    token.version = "1"
    token.permit(account.address, spender, 1_000_000, grant.deadline, grant.v, grant.r, grant.s)


def test_permit_bound_to_chain(gateway, token, account, spender):
    """A signature for one chain does not verify on another."""
    grant = PermitAuthorization().authorize(gateway, spender, Decimal(1))
    token.chain_id = 84532
    with pytest.raises(ValueError, match="invalid signature"):
        token.permit(account.address, spender, 1_000_000, grant.deadline, grant.v, grant.r, grant.s)


def test_permit_amount_bound(gateway, token, account, spender):
    grant = PermitAuthorization().authorize(gateway, spender, Decimal(1))
    with pytest.raises(ValueError, match="invalid signature"):
        token.permit(account.address, spender, 2_000_000, grant.deadline, grant.v, grant.r, grant.s)


def test_permit_no_transactions(gateway, spender):
    PermitAuthorization().authorize(gateway, spender, Decimal(1))
    gateway.transact.assert_not_called()
    gateway.submit_call.assert_not_called()


def test_create_authorization_provider():
    assert isinstance(create_authorization_provider(AuthorizationMode.permit), PermitAuthorization)
    assert isinstance(create_authorization_provider(AuthorizationMode.preapproval), AllowanceAuthorization)
