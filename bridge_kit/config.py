"""Environment configuration.

Everything is read once at process start into an immutable :py:class:`BridgeConfig`.

Environment variables:

- ``PRIVATE_KEY``: 0x-prefixed signer key, required

- ``JSON_RPC_<CHAIN>``: JSON-RPC URL per chain, e.g. ``JSON_RPC_BASE_SEPOLIA``.
  Chains without an URL are not available.

- ``IRIS_API_URL``: attestation service, defaults to the sandbox

- ``BRIDGE_AUTHORIZATION_MODE``: ``permit`` or ``preapproval`` (default)

- ``CONFIRMATION_TIMEOUT_SECONDS``: default 120

- ``ATTESTATION_POLL_INTERVAL_SECONDS``: default 5

- ``ATTESTATION_TIMEOUT_SECONDS``: unset waits until the service answers
"""

import datetime
import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from bridge_kit.attestation import AttestationPoller
from bridge_kit.authorization import AuthorizationMode, create_authorization_provider
from bridge_kit.chain import DEFAULT_CHAIN_PROFILES, ChainProfile, get_json_rpc_env
from bridge_kit.constants import (
    DEFAULT_ATTESTATION_POLL_INTERVAL,
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_MIN_NATIVE_BALANCE,
    DEFAULT_PERMIT_DEADLINE,
    IRIS_API_SANDBOX_URL,
)
from bridge_kit.gas import GasPricingStrategy
from bridge_kit.gateway import ChainGateway
from bridge_kit.transfer import TransferOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    """Run configuration."""

    #: Signer key, 0x-prefixed
    private_key: str

    #: Chains with a JSON-RPC URL, by name
    chains: dict[str, ChainProfile]

    iris_api_url: str = IRIS_API_SANDBOX_URL

    authorization_mode: AuthorizationMode = AuthorizationMode.preapproval

    confirmation_timeout: datetime.timedelta = DEFAULT_CONFIRMATION_TIMEOUT

    #: Seconds
    attestation_poll_interval: float = DEFAULT_ATTESTATION_POLL_INTERVAL

    #: Seconds, ``None`` for no limit
    attestation_timeout: Optional[float] = None

    permit_deadline: datetime.timedelta = DEFAULT_PERMIT_DEADLINE

    min_native_balance: Decimal = Decimal(DEFAULT_MIN_NATIVE_BALANCE)

    def __repr__(self):
        # Never print the key
        return f"<BridgeConfig chains:{list(self.chains)} mode:{self.authorization_mode.value} iris:{self.iris_api_url}>"

    def get_account(self) -> LocalAccount:
        return Account.from_key(self.private_key)


def _read_float(environ: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    value = environ.get(name)
    if not value:
        return default
    try:
        result = float(value)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} is not a number: {value}") from e
    if result <= 0:
        raise ValueError(f"Environment variable {name} must be positive, got {value}")
    return result


def load_config(
    environ: Mapping[str, str] = os.environ,
    profiles: dict[str, ChainProfile] = DEFAULT_CHAIN_PROFILES,
) -> BridgeConfig:
    """Read configuration from environment variables.

    :param environ:
        Pass a dict in tests

    :param profiles:
        Known chains. Only the ones with ``JSON_RPC_<CHAIN>`` set end up in the config.

    :raise ValueError:
        Missing or malformed variables
    """
    private_key = environ.get("PRIVATE_KEY")
    if not private_key:
        raise ValueError("PRIVATE_KEY environment variable is not set")
    if not private_key.startswith("0x"):
        raise ValueError("PRIVATE_KEY must be 0x-prefixed")

    chains = {}
    for name, profile in profiles.items():
        rpc_url = environ.get(get_json_rpc_env(name))
        if rpc_url:
            chains[name] = profile.with_rpc_url(rpc_url)
        else:
            logger.info("%s not set, chain %s not available", get_json_rpc_env(name), name)

    mode_name = environ.get("BRIDGE_AUTHORIZATION_MODE", AuthorizationMode.preapproval.value).lower()
    try:
        authorization_mode = AuthorizationMode(mode_name)
    except ValueError as e:
        choices = ", ".join(m.value for m in AuthorizationMode)
        raise ValueError(f"BRIDGE_AUTHORIZATION_MODE must be one of {choices}, got {mode_name}") from e

    confirmation_timeout = _read_float(environ, "CONFIRMATION_TIMEOUT_SECONDS", DEFAULT_CONFIRMATION_TIMEOUT.total_seconds())

    return BridgeConfig(
        private_key=private_key,
        chains=chains,
        iris_api_url=environ.get("IRIS_API_URL") or IRIS_API_SANDBOX_URL,
        authorization_mode=authorization_mode,
        confirmation_timeout=datetime.timedelta(seconds=confirmation_timeout),
        attestation_poll_interval=_read_float(environ, "ATTESTATION_POLL_INTERVAL_SECONDS", DEFAULT_ATTESTATION_POLL_INTERVAL),
        attestation_timeout=_read_float(environ, "ATTESTATION_TIMEOUT_SECONDS", None),
    )


def create_transfer_orchestrator(config: BridgeConfig) -> TransferOrchestrator:
    """Wire up gateways, the poller and the authorization variant.

    Gateways are created once here and shared by everything that talks to that chain.
    """
    if len(config.chains) < 2:
        raise ValueError(f"Need at least two chains with JSON-RPC configured, got {list(config.chains)}")

    account = config.get_account()
    gateways = {name: ChainGateway(profile, account) for name, profile in config.chains.items()}
    gas_strategy = GasPricingStrategy()

    authorization = create_authorization_provider(
        config.authorization_mode,
        gas_strategy=gas_strategy,
        confirmation_timeout=config.confirmation_timeout,
        permit_deadline=config.permit_deadline,
    )

    poller = AttestationPoller(
        api_base_url=config.iris_api_url,
        poll_interval=config.attestation_poll_interval,
    )

    logger.info("Bridge wallet %s, chains %s, authorization %s", account.address, list(gateways), config.authorization_mode.value)

    return TransferOrchestrator(
        gateways=gateways,
        authorization=authorization,
        attestation_poller=poller,
        gas_strategy=gas_strategy,
        confirmation_timeout=config.confirmation_timeout,
        min_native_balance=config.min_native_balance,
        attestation_timeout=config.attestation_timeout,
    )
