"""bridge_kit package root.

Cross-chain USDC transfers over a burn-and-mint bridge:
burn on the source chain, wait for Circle's attestation, mint on the destination chain.

See :py:mod:`bridge_kit.transfer` for the entry point.
"""

import sys


#: Minimum required Python version to run this package
MIN_PYTHON_VERSION = (3, 10)


def _check_python_version():
    """Try early abort if the Python version is too old."""
    if sys.version_info < MIN_PYTHON_VERSION:
        raise RuntimeError(f"bridge-kit needs Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or later")


_check_python_version()
