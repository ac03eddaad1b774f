"""Bridging kit contract calls.

Build bound calls for the three mutating steps of a transfer:

- ``bridgeWithPreapproval()`` on the source chain bridging kit, after an on-chain approval

- ``bridgeWithPermit()`` on the source chain bridging kit, with a detached EIP-2612 signature

- ``receiveMessage()`` on the destination chain MessageTransmitterV2

Example::

    params = build_bridge_call_params(request, source.profile, destination.profile, sender=source.address)
    burn_fn = prepare_bridge_with_permit(source.bridge_contract, params, permit)
    receipt = source.transact(burn_fn, gas_plan)

The ``BridgeParams`` struct field order is a fixed wire contract
with the deployed bridging kit contracts.
"""

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from eth_typing import HexAddress
from web3 import Web3
from web3.contract import Contract
from web3.contract.contract import ContractFunction

from bridge_kit.abi import ZERO_ADDRESS
from bridge_kit.authorization import PermitSignature
from bridge_kit.chain import ChainProfile
from bridge_kit.constants import FINALITY_THRESHOLD_FAST, FINALITY_THRESHOLD_STANDARD
from bridge_kit.gateway import convert_to_raw

if TYPE_CHECKING:
    from bridge_kit.transfer import TransferRequest

logger = logging.getLogger(__name__)

#: bytes32(0)
ZERO_BYTES32 = b"\x00" * 32


class TransferSpeed(enum.Enum):
    """How final the burn block must be before Circle attests."""

    #: Confirmed blocks, may incur a fee
    fast = "fast"

    #: Finalized blocks
    standard = "standard"


def get_finality_threshold(speed: TransferSpeed) -> int:
    """Map the speed class to ``minFinalityThreshold``."""
    match speed:
        case TransferSpeed.fast:
            return FINALITY_THRESHOLD_FAST
        case TransferSpeed.standard:
            return FINALITY_THRESHOLD_STANDARD
    raise ValueError(f"Unknown transfer speed: {speed}")


def encode_bytes32_address(address: HexAddress | str | None) -> bytes:
    """Convert an address to the bytes32 format used for ``mintRecipient`` and ``destinationCaller``.

    The address is left-padded with zeros to 32 bytes.

    :param address:
        0x-prefixed address. ``None`` encodes as bytes32 zero.
    """
    if address is None:
        return ZERO_BYTES32
    address = Web3.to_checksum_address(address)
    return bytes.fromhex(address[2:].lower().zfill(64))


@dataclass(frozen=True, slots=True)
class BridgeCallParams:
    """``BridgeParams`` struct of the bridging kit contract.

    All amounts are raw token units.
    Fields are declared in wire order.
    """

    amount: int

    destination_domain: int

    min_finality_threshold: int

    #: The most Circle may keep for the transfer
    max_fee: int

    #: Fee paid to ``fee_recipient``, raw units or bips
    fee: int

    burn_token: HexAddress

    fee_recipient: HexAddress

    #: Left-padded recipient address
    mint_recipient: bytes

    #: Left-padded relayer restriction, bytes32 zero for anyone
    destination_caller: bytes

    fee_is_bips: bool

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"Amount must be positive, got {self.amount}")
        if not (0 <= self.max_fee < self.amount):
            raise ValueError(f"maxFee must be below amount: maxFee {self.max_fee}, amount {self.amount}")
        assert len(self.mint_recipient) == 32, f"Bad mint recipient: {self.mint_recipient!r}"
        assert len(self.destination_caller) == 32, f"Bad destination caller: {self.destination_caller!r}"

    def as_tuple(self) -> tuple:
        """Encode as the ABI tuple."""
        return (
            self.amount,
            self.destination_domain,
            self.min_finality_threshold,
            self.max_fee,
            self.fee,
            Web3.to_checksum_address(self.burn_token),
            Web3.to_checksum_address(self.fee_recipient),
            self.mint_recipient,
            self.destination_caller,
            self.fee_is_bips,
        )


def build_bridge_call_params(
    request: "TransferRequest",
    source: ChainProfile,
    destination: ChainProfile,
    sender: HexAddress | str,
) -> BridgeCallParams:
    """Translate a transfer request to the contract struct.

    - ``maxFee`` is ``request.max_fee`` or everything except one raw unit

    - The fee recipient defaults to the sender

    :param sender:
        Source wallet, used as the default fee recipient
    """
    amount = convert_to_raw(request.amount)

    if request.max_fee is None:
        max_fee = amount - 1
    else:
        max_fee = convert_to_raw(request.max_fee)

    if request.fee_is_bips:
        fee = int(request.fee)
    else:
        fee = convert_to_raw(request.fee)

    fee_recipient = request.fee_recipient or sender or ZERO_ADDRESS

    params = BridgeCallParams(
        amount=amount,
        destination_domain=destination.domain,
        min_finality_threshold=get_finality_threshold(request.speed),
        max_fee=max_fee,
        fee=fee,
        burn_token=source.token_address,
        fee_recipient=Web3.to_checksum_address(fee_recipient),
        mint_recipient=encode_bytes32_address(request.recipient),
        destination_caller=encode_bytes32_address(request.destination_caller),
        fee_is_bips=request.fee_is_bips,
    )

    logger.info(
        "Bridge params: amount=%d, %s (domain %d) -> %s (domain %d), recipient=%s, maxFee=%d, threshold=%d",
        params.amount,
        source.name,
        source.domain,
        destination.name,
        destination.domain,
        request.recipient,
        params.max_fee,
        params.min_finality_threshold,
    )
    return params


def prepare_bridge_with_preapproval(bridge: Contract, params: BridgeCallParams) -> ContractFunction:
    """Build a bound ``bridgeWithPreapproval()`` call.

    The bridge must already have an allowance for ``params.amount``.
    """
    return bridge.functions.bridgeWithPreapproval(params.as_tuple())


def prepare_bridge_with_permit(bridge: Contract, params: BridgeCallParams, permit: PermitSignature) -> ContractFunction:
    """Build a bound ``bridgeWithPermit()`` call.

    The bridge applies the permit and burns in the same transaction.
    """
    assert isinstance(permit, PermitSignature), f"Got {type(permit)}"
    return bridge.functions.bridgeWithPermit(params.as_tuple(), permit.as_tuple())


def prepare_receive_message(message_transmitter: Contract, message: bytes, attestation: bytes) -> ContractFunction:
    """Build a bound ``receiveMessage()`` call on MessageTransmitterV2.

    This relays the attestation to the destination chain, causing
    USDC to be minted to the ``mintRecipient`` of the burn.

    :param message:
        The message bytes from the attestation service

    :param attestation:
        The signed attestation bytes from the attestation service
    """
    logger.info(
        "Preparing receiveMessage: message_len=%d, attestation_len=%d",
        len(message),
        len(attestation),
    )
    return message_transmitter.functions.receiveMessage(message, attestation)
