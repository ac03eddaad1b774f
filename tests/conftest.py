"""Shared fixtures for bridge_kit tests.

Most tests run against mocked :py:class:`bridge_kit.gateway.ChainGateway` objects.
Gateway tests use an in-process EthereumTester chain.
"""

import secrets
from decimal import Decimal
from unittest.mock import Mock

import pytest
from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import Web3

from bridge_kit.abi import get_deployed_contract
from bridge_kit.chain import DEFAULT_CHAIN_PROFILES, ChainProfile
from bridge_kit.gas import GWEI, GasPriceMethod, GasPriceSuggestion
from bridge_kit.gateway import BalanceSnapshot, ChainGateway


@pytest.fixture()
def hot_wallet_private_key() -> HexBytes:
    """Generate a private key"""
    return HexBytes(secrets.token_bytes(32))


@pytest.fixture()
def account(hot_wallet_private_key) -> LocalAccount:
    return Account.from_key(hot_wallet_private_key)


@pytest.fixture()
def sepolia() -> ChainProfile:
    return DEFAULT_CHAIN_PROFILES["sepolia"].with_rpc_url("http://localhost:8545")


@pytest.fixture()
def base_sepolia() -> ChainProfile:
    return DEFAULT_CHAIN_PROFILES["base_sepolia"].with_rpc_url("http://localhost:8546")


def make_mock_gateway(
    profile: ChainProfile,
    account: LocalAccount,
    token_balance=Decimal(10),
    native_balance=Decimal(1),
    reference_fee=10 * GWEI,
    gas_estimate=200_000,
) -> Mock:
    """Create a gateway that answers reads from fixed numbers.

    Contract objects are real web3.py proxies without a provider,
    so bound calls can be built and inspected.
    """
    web3 = Web3()
    gateway = Mock(spec=ChainGateway)
    gateway.profile = profile
    gateway.address = account.address
    gateway.wallet = Mock()
    gateway.wallet.account = account
    gateway.chain_id = profile.chain_id
    gateway.web3 = web3

    if profile.can_burn:
        gateway.bridge_contract = get_deployed_contract(web3, "BridgingKit.json", profile.bridge_address)
    gateway.message_transmitter = get_deployed_contract(web3, "MessageTransmitterV2.json", profile.message_transmitter_address)

    gateway.fetch_balances.return_value = BalanceSnapshot(
        chain=profile.name,
        address=account.address,
        token=token_balance,
        native=native_balance,
    )
    gateway.get_token_balance.return_value = token_balance
    gateway.get_native_balance.return_value = native_balance
    gateway.fetch_gas_price.return_value = GasPriceSuggestion(
        method=GasPriceMethod.london,
        base_fee=reference_fee // 2,
        max_priority_fee_per_gas=GWEI,
        max_fee_per_gas=reference_fee,
    )
    gateway.estimate_gas.return_value = gas_estimate
    return gateway


@pytest.fixture()
def mock_gateway_factory():
    """See :py:func:`make_mock_gateway`."""
    return make_mock_gateway
