"""Bridge USDC between two testnets.

- Reads the configuration from environment variables or ``.env``,
  see :py:mod:`bridge_kit.config`

- Burns on the source chain, waits for Circle's attestation and mints on the destination chain

- Prints balances before and after

Usage:

.. code-block:: shell

    export PRIVATE_KEY=0x...
    export JSON_RPC_SEPOLIA=...
    export JSON_RPC_BASE_SEPOLIA=...
    export BRIDGE_AUTHORIZATION_MODE=permit
    export SOURCE_CHAIN=sepolia
    export DESTINATION_CHAIN=base_sepolia
    export AMOUNT=1.0
    export SPEED=fast
    python scripts/bridge-usdc.py

If the script dies after the burn, mint later with:

.. code-block:: shell

    export RESUME_BURN_TX=0x...
    python scripts/bridge-usdc.py
"""

import logging
import os
import sys
from decimal import Decimal

from dotenv import load_dotenv
from tabulate import tabulate

from bridge_kit.bridge import TransferSpeed
from bridge_kit.config import create_transfer_orchestrator, load_config
from bridge_kit.exceptions import TransferFailed
from bridge_kit.transfer import TransferOutcome, TransferRequest
from bridge_kit.utils import setup_console_logging

logger = logging.getLogger(__name__)


def print_balances(outcome: TransferOutcome):
    rows = []
    for chain, before in outcome.balances_before.items():
        after = outcome.balances_after.get(chain)
        rows.append([chain, "Before", before.token, before.native])
        if after:
            rows.append([chain, "After", after.token, after.native])
    print(tabulate(rows, headers=["Chain", "When", "USDC", "Native"], tablefmt="fancy_grid"))


def main():
    load_dotenv()
    setup_console_logging()

    config = load_config()
    orchestrator = create_transfer_orchestrator(config)

    source = os.environ.get("SOURCE_CHAIN", "sepolia")
    destination = os.environ.get("DESTINATION_CHAIN", "base_sepolia")
    resume_tx = os.environ.get("RESUME_BURN_TX")

    try:
        if resume_tx:
            outcome = orchestrator.resume(source, destination, resume_tx)
        else:
            sender = orchestrator.get_gateway(source).address
            request = TransferRequest(
                source=source,
                destination=destination,
                amount=Decimal(os.environ.get("AMOUNT", "1.0")),
                recipient=os.environ.get("RECIPIENT", sender),
                speed=TransferSpeed(os.environ.get("SPEED", "fast")),
            )
            outcome = orchestrator.execute(request)
    except TransferFailed as e:
        print(f"Transfer failed at {e.state.value}: {e}")
        if e.outcome.burn_tx_hash and not e.outcome.mint_receipt:
            print(f"USDC is burnt but not minted. Resume with RESUME_BURN_TX={e.outcome.burn_tx_hash}")
        sys.exit(1)

    print(f"Burn tx: {outcome.burn_tx_hash}")
    print(f"Mint tx: {outcome.mint_receipt.tx_hash}")
    print_balances(outcome)
    print("All ok")


if __name__ == "__main__":
    main()
