"""Chain profiles.

Each chain we bridge on is described by an immutable :py:class:`ChainProfile`.
Profiles are loaded once at start up, see :py:mod:`bridge_kit.config`.
"""

import dataclasses
from dataclasses import dataclass
from typing import Optional

from eth_typing import HexAddress

from bridge_kit.constants import (
    CCTP_DOMAIN_AVALANCHE,
    CCTP_DOMAIN_BASE,
    CCTP_DOMAIN_ETHEREUM,
    MESSAGE_TRANSMITTER_V2_TESTNET,
)


@dataclass(frozen=True, slots=True)
class ChainProfile:
    """Per-chain configuration."""

    #: Our shorthand name, e.g. ``base_sepolia``
    name: str

    #: EVM chain id
    chain_id: int

    #: JSON-RPC endpoint.
    #:
    #: Empty for the built-in profiles, see :py:meth:`with_rpc_url`.
    rpc_url: str

    #: USDC token on this chain
    token_address: HexAddress

    #: Bridging kit contract with ``bridgeWithPreapproval()`` and ``bridgeWithPermit()``.
    #:
    #: ``None`` if there is no deployment and this chain can be only a destination.
    bridge_address: Optional[HexAddress]

    #: MessageTransmitterV2 with ``receiveMessage()``
    message_transmitter_address: HexAddress

    #: Attestation service domain id
    domain: int

    #: Symbol of the gas token, used in error messages
    native_currency: str = "ETH"

    def __repr__(self):
        return f"<Chain {self.name} id:{self.chain_id} domain:{self.domain}>"

    @property
    def can_burn(self) -> bool:
        """Can this chain be a transfer source."""
        return self.bridge_address is not None

    def with_rpc_url(self, rpc_url: str) -> "ChainProfile":
        """Bind a profile to a JSON-RPC endpoint.

        :return:
            A new profile
        """
        assert rpc_url, f"Empty JSON-RPC URL for {self.name}"
        return dataclasses.replace(self, rpc_url=rpc_url)


#: Built-in testnet deployments
DEFAULT_CHAIN_PROFILES: dict[str, ChainProfile] = {
    "sepolia": ChainProfile(
        name="sepolia",
        chain_id=11155111,
        rpc_url="",
        token_address=HexAddress("0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"),
        bridge_address=HexAddress("0xa4b3f907eD312C7d96Ed776c5993a4bE7C5022b3"),
        message_transmitter_address=MESSAGE_TRANSMITTER_V2_TESTNET,
        domain=CCTP_DOMAIN_ETHEREUM,
        native_currency="ETH",
    ),
    "base_sepolia": ChainProfile(
        name="base_sepolia",
        chain_id=84532,
        rpc_url="",
        token_address=HexAddress("0x036CbD53842c5426634e7929541eC2318f3dCF7e"),
        bridge_address=HexAddress("0x63B8E61b90d4c4E3059f65BAC7da21DA96094Fa0"),
        message_transmitter_address=MESSAGE_TRANSMITTER_V2_TESTNET,
        domain=CCTP_DOMAIN_BASE,
        native_currency="ETH",
    ),
    "avalanche_fuji": ChainProfile(
        name="avalanche_fuji",
        chain_id=43113,
        rpc_url="",
        token_address=HexAddress("0x5425890298aed601595a70AB815c96711a31Bc65"),
        # No bridging kit deployment yet
        bridge_address=None,
        message_transmitter_address=MESSAGE_TRANSMITTER_V2_TESTNET,
        domain=CCTP_DOMAIN_AVALANCHE,
        native_currency="AVAX",
    ),
}


def get_json_rpc_env(chain_name: str) -> str:
    """Get the JSON-RPC URL environment variable name for a chain.

    E.g. ``base_sepolia`` -> ``JSON_RPC_BASE_SEPOLIA``.
    """
    return f"JSON_RPC_{chain_name.upper()}"
