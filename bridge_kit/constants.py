"""Bridge protocol constants.

Burn-and-mint transfers go through three contracts:

1. Source chain: the bridging kit contract pulls USDC from the sender and burns it
   through Circle's TokenMessengerV2 in ``bridgeWithPreapproval()`` or ``bridgeWithPermit()``
2. Circle's Iris attestation service signs the burn message
3. Destination chain: ``receiveMessage()`` on MessageTransmitterV2 mints USDC

The attestation service does not use EVM chain ids. It has its own domain ids.

- `CCTP V2 documentation <https://developers.circle.com/cctp>`_
- `Iris API <https://developers.circle.com/api-reference/cctp/all/get-messages-v-2>`_
"""

import datetime

from eth_typing import HexAddress

#: USDC uses 6 decimals on every chain we support
USDC_DECIMALS = 6

#: CCTP domain id for Ethereum and Sepolia
CCTP_DOMAIN_ETHEREUM = 0

#: CCTP domain id for Avalanche and Fuji
CCTP_DOMAIN_AVALANCHE = 1

#: CCTP domain id for Base and Base Sepolia
CCTP_DOMAIN_BASE = 6

#: MessageTransmitterV2 on the testnets.
#: Same address on all EVM testnets via CREATE2.
MESSAGE_TRANSMITTER_V2_TESTNET: HexAddress = HexAddress("0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275")

#: Circle Iris attestation API base URL (mainnet).
IRIS_API_BASE_URL = "https://iris-api.circle.com"

#: Circle Iris attestation API base URL (testnets).
IRIS_API_SANDBOX_URL = "https://iris-api-sandbox.circle.com"

#: Minimum finality threshold for standard (finalized) transfers.
FINALITY_THRESHOLD_STANDARD = 2000

#: Minimum finality threshold for fast (confirmed) transfers.
#: Uses lower block confirmation, may incur fees.
FINALITY_THRESHOLD_FAST = 1000

#: How long we wait for a broadcasted transaction to be mined
DEFAULT_CONFIRMATION_TIMEOUT = datetime.timedelta(minutes=2)

#: Seconds between attestation service queries
DEFAULT_ATTESTATION_POLL_INTERVAL = 5.0

#: How long a permit signature stays valid
DEFAULT_PERMIT_DEADLINE = datetime.timedelta(hours=1)

#: We refuse to start a transfer with less native currency than this for gas
DEFAULT_MIN_NATIVE_BALANCE = "0.01"

#: Marker used as the transaction hash of an allowance grant when
#: the existing allowance already covered the transfer
NO_APPROVAL_NEEDED = "No approval needed"
