"""
Signature confirmation polling.

Polling is a small state machine: WAITING until the ledger reports the
signature at the target commitment (CONFIRMED), reports an error for it
(FAILED), or the deadline passes (TIMED_OUT). A signature the ledger has not
seen yet keeps the machine WAITING, and so does a block-height-exceeded
error, since a relay may still land the transaction.
"""

from enum import Enum
from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel

from bundler.solana.clock import Clock, SYSTEM_CLOCK
from bundler.solana.errors import ConfirmationTimeoutError, RpcError, RpcRateLimitError, TransactionFailedError
from bundler.solana.models import SignatureStatus
from bundler.solana.rpc import LedgerRpc

COMMITMENT_LEVELS = {"processed": 0, "confirmed": 1, "finalized": 2}


class ConfirmationState(str, Enum):
    WAITING = "waiting"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ConfirmationOutcome(BaseModel):
    """Terminal result of polling one signature."""
    signature: str
    state: ConfirmationState
    err: Optional[Any] = None
    polls: int = 0
    elapsed_seconds: float = 0.0
    last_status: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.state == ConfirmationState.CONFIRMED


def is_block_height_exceeded(message: str) -> bool:
    lowered = message.lower()
    return "block height exceeded" in lowered or "blockheightexceeded" in lowered


def next_state(
    status: Optional[SignatureStatus],
    deadline_passed: bool,
    commitment: str = "confirmed"
) -> ConfirmationState:
    """
    Compute the next confirmation state from one status observation.

    Args:
        status: Status returned by the ledger, None when not found yet
        deadline_passed: Whether the polling deadline has been reached
        commitment: Minimum commitment that counts as confirmed

    Returns:
        The new state
    """
    if status is not None:
        if status.err is not None:
            return ConfirmationState.FAILED
        reached = COMMITMENT_LEVELS.get(status.confirmation_status or "", -1)
        if reached >= COMMITMENT_LEVELS[commitment]:
            return ConfirmationState.CONFIRMED
    if deadline_passed:
        return ConfirmationState.TIMED_OUT
    return ConfirmationState.WAITING


class SignatureConfirmer:
    """
    Polls signature status until a terminal state is reached.
    """

    def __init__(
        self,
        rpc: LedgerRpc,
        timeout_seconds: float,
        poll_interval_seconds: float,
        clock: Optional[Clock] = None,
        commitment: str = "confirmed"
    ):
        if commitment not in COMMITMENT_LEVELS:
            raise ValueError(f"Unknown commitment level: {commitment}")
        self.rpc = rpc
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.clock = clock or SYSTEM_CLOCK
        self.commitment = commitment

    async def wait(self, signature: str, timeout_seconds: Optional[float] = None) -> ConfirmationOutcome:
        """
        Poll until the signature confirms, fails or the deadline passes.

        Args:
            signature: Transaction signature
            timeout_seconds: Override of the configured timeout

        Returns:
            Terminal ConfirmationOutcome (never WAITING)
        """
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        start = self.clock.monotonic()
        deadline = start + timeout
        polls = 0
        last_status = None

        while True:
            status = None
            try:
                status = await self.rpc.get_signature_status(signature)
            except RpcRateLimitError:
                raise
            except RpcError as e:
                if not is_block_height_exceeded(str(e)):
                    raise
                logger.warning(f"Block height exceeded while polling {signature}, still waiting")
            polls += 1
            if status is not None:
                last_status = status.confirmation_status

            now = self.clock.monotonic()
            state = next_state(status, now >= deadline, self.commitment)
            logger.debug(
                f"Signature {signature} poll {polls}: {state.value} ({last_status})",
                extra={"signature": signature, "poll": polls, "state": state.value}
            )

            if state != ConfirmationState.WAITING:
                outcome = ConfirmationOutcome(
                    signature=signature,
                    state=state,
                    err=status.err if status is not None else None,
                    polls=polls,
                    elapsed_seconds=now - start,
                    last_status=last_status,
                )
                if state == ConfirmationState.CONFIRMED:
                    logger.info(f"Transaction {signature} confirmed after {polls} polls")
                elif state == ConfirmationState.FAILED:
                    logger.error(f"Transaction {signature} failed on-chain: {outcome.err}")
                else:
                    logger.error(f"Transaction {signature} not confirmed within {timeout:.0f}s")
                return outcome

            await self.clock.sleep(min(self.poll_interval_seconds, max(deadline - now, 0)))

    async def wait_or_raise(self, signature: str, timeout_seconds: Optional[float] = None) -> str:
        """
        Like wait(), but raises on any outcome other than confirmed.

        Returns:
            The confirmed signature

        Raises:
            TransactionFailedError: The ledger reported an error
            ConfirmationTimeoutError: The deadline passed
        """
        outcome = await self.wait(signature, timeout_seconds)
        if outcome.state == ConfirmationState.FAILED:
            raise TransactionFailedError(signature, outcome.err)
        if outcome.state == ConfirmationState.TIMED_OUT:
            raise ConfirmationTimeoutError(signature, outcome.elapsed_seconds, outcome.last_status)
        return signature
