"""Circle Iris attestation service client.

After the burn is mined on the source chain, Circle's attestation service
observes it and signs the burn message once the block is final enough.
:py:class:`AttestationPoller` polls for the signed message.

- Every response goes through :py:func:`classify_response`,
  which tags it as pending, complete, failed or transient

- Only an explicit service failure stops the polling with an error

- The wait can be bounded with a timeout and cancelled with a :py:class:`threading.Event`

Example::

    poller = AttestationPoller(api_base_url=IRIS_API_SANDBOX_URL)
    record = poller.await_attestation(
        transaction_hash="0x...",
        source_domain=CCTP_DOMAIN_ETHEREUM,
        timeout=1800,
    )

    # Use record.message and record.attestation
    # with prepare_receive_message() on the destination chain
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import requests

from bridge_kit.constants import DEFAULT_ATTESTATION_POLL_INTERVAL, IRIS_API_SANDBOX_URL
from bridge_kit.exceptions import AttestationCancelled, AttestationServiceFailure, BridgeError, TransientNetworkError

logger = logging.getLogger(__name__)

#: HTTP 404 status code indicating resource not found
HTTP_NOT_FOUND = 404

#: Iris puts this in the attestation field until it has signed
PENDING_ATTESTATION = "PENDING"

#: Seconds for a single HTTP request
DEFAULT_REQUEST_TIMEOUT = 30

#: Errors in how we build the request, retrying cannot help
REQUEST_BUG_ERRORS = (
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidURL,
    requests.exceptions.InvalidHeader,
)


class AttestationStatus(enum.Enum):
    """Where an attestation is at."""

    pending = "pending"

    complete = "complete"

    failed = "failed"


@dataclass(frozen=True, slots=True)
class AttestationRecord:
    """Attestation data for a burn.

    Contains the signed message and attestation needed to call
    ``receiveMessage()`` on the destination chain's MessageTransmitterV2.
    """

    #: The message bytes to relay to the destination chain
    message: bytes

    #: The signed attestation bytes from Circle's Iris service
    attestation: bytes

    #: Pending until Iris has signed
    status: AttestationStatus


class PollResultKind(enum.Enum):
    """How one attestation query went."""

    #: Not indexed or not signed yet, keep polling
    pending = "pending"

    #: Signed, we are done
    complete = "complete"

    #: The service reported an error, stop
    failed = "failed"

    #: Network hiccup or garbage response, keep polling
    transient = "transient"


@dataclass(frozen=True, slots=True)
class PollResult:
    """Tagged result of one attestation query."""

    kind: PollResultKind

    #: Set when ``kind`` is complete
    record: Optional[AttestationRecord] = None

    #: Human readable explanation for logs and errors
    reason: str = ""

    #: Set when ``kind`` is failed or transient
    error: Optional[BridgeError] = None


def _decode_hex(value: str) -> bytes:
    if not isinstance(value, str):
        raise ValueError(f"Expected hex string, got {value!r}")
    return bytes.fromhex(value.removeprefix("0x"))


def _failed(reason: str) -> PollResult:
    return PollResult(PollResultKind.failed, reason=reason, error=AttestationServiceFailure(reason))


def _transient(reason: str) -> PollResult:
    return PollResult(PollResultKind.transient, reason=reason, error=TransientNetworkError(reason))


def classify_response(response: requests.Response) -> PollResult:
    """Tag an Iris API response.

    - 404 means the transaction is not indexed yet

    - Any other non-2xx status is a service failure

    - Only the first message of the response is consulted
    """
    if response.status_code == HTTP_NOT_FOUND:
        return PollResult(PollResultKind.pending, reason="not yet indexed (404)")

    if not response.ok:
        return _failed(f"HTTP {response.status_code}: {response.text[:200]}")

    try:
        data = response.json()
    except ValueError as e:
        return _transient(f"could not decode JSON: {e}")

    if not isinstance(data, dict):
        return _transient(f"unexpected response body: {response.text[:200]}")

    messages = data.get("messages") or []
    if not messages:
        return PollResult(PollResultKind.pending, reason="no messages yet")

    if not isinstance(messages, list) or not isinstance(messages[0], dict):
        return _transient(f"unexpected messages payload: {response.text[:200]}")

    msg = messages[0]
    status = msg.get("status", "")
    attestation_hex = msg.get("attestation")

    if status == AttestationStatus.complete.value and attestation_hex and attestation_hex != PENDING_ATTESTATION:
        try:
            record = AttestationRecord(
                message=_decode_hex(msg.get("message", "")),
                attestation=_decode_hex(attestation_hex),
                status=AttestationStatus.complete,
            )
        except ValueError as e:
            return _transient(f"could not decode message hex: {e}")
        return PollResult(PollResultKind.complete, record=record, reason="complete")

    return PollResult(PollResultKind.pending, reason=f"status {status or '<none>'}")


def classify_exception(e: Exception) -> PollResult:
    """Tag an exception raised during a query.

    Any :py:class:`requests.RequestException` raised while talking to the service is transient,
    including connection resets while reading the body.
    Malformed request errors are bugs and are not classified, the caller lets them propagate.

    :raise Exception:
        Re-raises ``e`` if it is not a network error
    """
    if isinstance(e, REQUEST_BUG_ERRORS):
        raise e
    if isinstance(e, requests.RequestException):
        return _transient(f"network error: {e.__class__.__name__}: {e}")
    raise e


def format_query_url(api_base_url: str, source_domain: int, transaction_hash: str) -> str:
    # Iris API requires 0x-prefixed transaction hash
    if not transaction_hash.startswith("0x"):
        transaction_hash = f"0x{transaction_hash}"
    return f"{api_base_url}/v2/messages/{source_domain}?transactionHash={transaction_hash}"


class AttestationPoller:
    """Poll Iris until a burn message is attested."""

    def __init__(
        self,
        api_base_url: str = IRIS_API_SANDBOX_URL,
        poll_interval: float = DEFAULT_ATTESTATION_POLL_INTERVAL,
        session: Optional[requests.Session] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        """
        :param api_base_url:
            Mainnet or sandbox Iris

        :param poll_interval:
            Fixed seconds between queries

        :param session:
            Reuse a HTTP session
        """
        self.api_base_url = api_base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.session = session or requests.Session()
        self.request_timeout = request_timeout

    def __repr__(self):
        return f"<AttestationPoller {self.api_base_url} interval:{self.poll_interval}s>"

    def query(self, transaction_hash: str, source_domain: int) -> PollResult:
        """Query the attestation once."""
        url = format_query_url(self.api_base_url, source_domain, transaction_hash)
        try:
            response = self.session.get(url, headers={"Content-Type": "application/json"}, timeout=self.request_timeout)
        except requests.RequestException as e:
            return classify_exception(e)
        return classify_response(response)

    def await_attestation(
        self,
        transaction_hash: str,
        source_domain: int,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AttestationRecord:
        """Poll until the attestation is complete.

        :param transaction_hash:
            The burn transaction on the source chain

        :param source_domain:
            Attestation service domain id of the source chain

        :param timeout:
            Give up after this many seconds. ``None`` polls until the service answers.

        :param cancel_event:
            Set this event from another thread to stop waiting

        :return:
            Complete attestation

        :raise AttestationServiceFailure:
            The service reported an error. No further queries were made.

        :raise AttestationCancelled:
            ``cancel_event`` was set or ``timeout`` passed
        """
        started = time.monotonic()
        attempt = 0

        while True:
            self._check_cancelled(transaction_hash, started, timeout, cancel_event)

            attempt += 1
            logger.info(
                "Polling attestation: domain=%s, tx=%s, attempt=%d, elapsed=%.1fs",
                source_domain,
                transaction_hash,
                attempt,
                time.monotonic() - started,
            )

            result = self.query(transaction_hash, source_domain)

            match result.kind:
                case PollResultKind.complete:
                    logger.info("Attestation retrieved for %s after %d attempts", transaction_hash, attempt)
                    return result.record
                case PollResultKind.failed:
                    logger.error("Attestation retrieval failed for %s: %s", transaction_hash, result.reason)
                    raise AttestationServiceFailure(f"Failed to get attestation for tx {transaction_hash} on domain {source_domain}: {result.reason}") from result.error
                case PollResultKind.transient:
                    logger.warning("Attestation query for %s failed, retrying: %s", transaction_hash, result.reason)
                case PollResultKind.pending:
                    logger.info("Waiting for attestation: %s", result.reason)

            self._wait(cancel_event)

    def _wait(self, cancel_event: Optional[threading.Event]):
        if cancel_event is not None:
            cancel_event.wait(self.poll_interval)
        else:
            time.sleep(self.poll_interval)

    def _check_cancelled(self, transaction_hash: str, started: float, timeout: Optional[float], cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise AttestationCancelled(f"Attestation wait for {transaction_hash} cancelled")

        if timeout is not None:
            elapsed = time.monotonic() - started
            if elapsed >= timeout:
                raise AttestationCancelled(f"Attestation not ready after {timeout}s for tx {transaction_hash}")


def is_attestation_complete(
    source_domain: int,
    transaction_hash: str,
    api_base_url: str = IRIS_API_SANDBOX_URL,
) -> bool:
    """One-shot check if attestation is ready.

    Network errors and service failures read as not ready.
    """
    poller = AttestationPoller(api_base_url=api_base_url)
    result = poller.query(transaction_hash, source_domain)
    if result.kind == PollResultKind.failed:
        logger.warning("Failed to check attestation status for tx %s: %s", transaction_hash, result.reason)
    return result.kind == PollResultKind.complete
