"""Error taxonomy for cross-chain transfers.

- Balance and gas affordability errors are raised before any transaction is broadcast

- Confirmation timeouts and reverts are never retried automatically:
  a retried burn or mint may double-spend if the original went through after all

- Attestation polling absorbs transient errors and only raises on terminal outcomes
"""


class BridgeError(Exception):
    """Base class for all bridge_kit errors."""


class InsufficientBalance(BridgeError):
    """The wallet does not hold enough tokens or native currency for the transfer."""


class InsufficientGasFunds(BridgeError):
    """The wallet cannot pay for the gas of a planned transaction."""


class ConfirmationTimeout(BridgeError):
    """We exceeded the transaction confirmation timeout.

    The transaction may still get included later.
    Inspect the chain before broadcasting anything again.
    """


class ContractCallReverted(BridgeError):
    """A contract call reverted, either at broadcast or on-chain."""

    def __init__(self, message: str, reason: str | None = None, tx_hash: str | None = None):
        super().__init__(message)
        #: Decoded revert reason, if the node gave us one
        self.reason = reason
        #: Transaction hash if the transaction was mined
        self.tx_hash = tx_hash


class AttestationServiceFailure(BridgeError):
    """The attestation service reported an error we cannot recover from by polling."""


class AttestationCancelled(BridgeError):
    """Attestation wait was cancelled by the caller or its deadline passed."""


class TransientNetworkError(BridgeError):
    """A network level hiccup while polling.

    Used to label poll results, never raised out of the poller.
    """


class TransferFailed(BridgeError):
    """A transfer reached its failed state.

    The original error is available as ``__cause__``.
    """

    def __init__(self, message: str, state, outcome):
        super().__init__(message)
        #: :py:class:`bridge_kit.transfer.TransferState` where the failure happened
        self.state = state
        #: Partially filled :py:class:`bridge_kit.transfer.TransferOutcome`
        self.outcome = outcome
