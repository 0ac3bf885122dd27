"""
Bundle submission and confirmation.

Atomic submission simulates the critical transaction, appends the relay tip
transaction and hands the whole bundle to a relay. Sequential submission
sends each batch directly to the ledger and waits for it to confirm before
sending the next.

A sequential run that fails part way leaves the earlier batches on-chain.
There is no rollback; the failed index in the result tells the operator
where it stopped.
"""

import random
from typing import List, Optional

from loguru import logger
from solders.transaction import VersionedTransaction

from bundler.config import BundlerConfig
from bundler.solana.batch_builder import TransactionBatchBuilder
from bundler.solana.clock import Clock, SYSTEM_CLOCK
from bundler.solana.confirmation import ConfirmationState, SignatureConfirmer
from bundler.solana.errors import BundlerConfigError, RelayError, SimulationFailedError, TransactionSendError
from bundler.solana.models import (
    Bundle,
    RelayStatus,
    SimulationResult,
    SubmissionResult,
    SubmissionStrategy,
    TransactionBatch,
)
from bundler.solana.relays import BundleStatusPoller, Relay
from bundler.solana.rpc import LedgerRpc
from bundler.solana.tx_executor import is_blockhash_not_found

SIMULATION_LOG_LINES = 20


def first_signature(tx: VersionedTransaction) -> str:
    return str(tx.signatures[0])


class BundleSubmissionEngine:
    """
    Submits bundles atomically through a relay or sequentially to the ledger.
    """

    def __init__(
        self,
        rpc: LedgerRpc,
        builder: TransactionBatchBuilder,
        config: BundlerConfig,
        relay: Optional[Relay] = None,
        clock: Optional[Clock] = None,
        confirmer: Optional[SignatureConfirmer] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize the submission engine.

        Args:
            rpc: Ledger RPC capability
            builder: Batch builder used to sign and build the tip transaction
            config: Run configuration
            relay: Relay for atomic submission, None for ledger-only runs
            clock: Clock for delays and polling
            confirmer: Signature confirmer, defaults to one using the configured timeout
            rng: Random source for tip account selection
        """
        self.rpc = rpc
        self.builder = builder
        self.config = config
        self.relay = relay
        self.clock = clock or SYSTEM_CLOCK
        self.confirmer = confirmer or SignatureConfirmer(
            rpc,
            timeout_seconds=config.confirmation_timeout_seconds,
            poll_interval_seconds=config.confirmation_poll_seconds,
            clock=self.clock,
        )
        self.rng = rng or random.Random()

    def default_strategy(self) -> SubmissionStrategy:
        if self.config.is_mainnet and self.relay is not None:
            return SubmissionStrategy.ATOMIC
        return SubmissionStrategy.SEQUENTIAL

    async def submit(self, bundle: Bundle, strategy: Optional[SubmissionStrategy] = None) -> SubmissionResult:
        """
        Submit a bundle with the given or default strategy.

        Returns:
            SubmissionResult

        Raises:
            SimulationFailedError: The critical transaction failed its dry run
            BundlerConfigError: The bundle cannot be submitted as configured
        """
        strategy = strategy or self.default_strategy()
        if strategy == SubmissionStrategy.ATOMIC:
            return await self.submit_atomic(bundle)
        return await self.submit_sequential(bundle)

    async def _refresh(self, batch: TransactionBatch) -> TransactionBatch:
        blockhash = await self.rpc.get_latest_blockhash()
        return batch.with_blockhash(blockhash.blockhash)

    async def simulate(self, bundle: Bundle) -> SimulationResult:
        """
        Dry-run the critical transaction against a fresh blockhash.

        Signatures are not verified. Later transactions depend on state the
        critical one creates, so only it is simulated.

        Raises:
            SimulationFailedError: If the simulation reports an error
        """
        index = bundle.critical_index
        batch = await self._refresh(bundle.batches[index])
        result = await self.rpc.simulate_transaction(self.builder.sign(batch))

        if result.err is not None:
            logger.error(
                f"Simulation failed for transaction {index + 1}: {result.err}",
                extra={"err": str(result.err), "logs": result.logs[-SIMULATION_LOG_LINES:]}
            )
            for line in result.logs[-SIMULATION_LOG_LINES:]:
                logger.error(f"  {line}")
            raise SimulationFailedError(result.err, result.logs, index)

        logger.info(f"Simulation passed for transaction {index + 1} ({result.units_consumed} units)")
        return result

    async def submit_atomic(self, bundle: Bundle) -> SubmissionResult:
        """
        Simulate, add the tip transaction and send the bundle through the relay.

        If the relay refuses the bundle and RELAY_FALLBACK_SEQUENTIAL is set,
        the batches (without tip) are sent sequentially instead.
        """
        if self.relay is None:
            raise BundlerConfigError("Atomic submission requires a relay")

        total = len(bundle.batches) + 1
        if self.relay.max_bundle_size is not None and total > self.relay.max_bundle_size:
            raise BundlerConfigError(
                f"Bundle has {total} transactions including the tip, "
                f"{self.relay.name} accepts at most {self.relay.max_bundle_size}"
            )

        await self.simulate(bundle)
        if self.config.simulate_only:
            logger.info("Simulate-only mode, not sending the bundle")
            return SubmissionResult(
                confirmed=False,
                strategy=SubmissionStrategy.ATOMIC,
                simulated=True,
                failure_reason="simulate only"
            )

        blockhash = (await self.rpc.get_latest_blockhash()).blockhash
        batches = [batch.with_blockhash(blockhash) for batch in bundle.batches]
        batches.append(self.builder.build_tip_batch(
            bundle.payer,
            self.relay.pick_tip_account(self.rng),
            self.config.tip_lamports,
            blockhash,
            batches[0].lookup_tables,
            index=len(batches)
        ))
        transactions = [self.builder.sign(batch) for batch in batches]
        signatures = [first_signature(tx) for tx in transactions]

        try:
            submission = await self.relay.submit(transactions)
        except RelayError as e:
            return await self._relay_failed(bundle, signatures, str(e))
        if not submission.accepted:
            return await self._relay_failed(bundle, signatures, submission.message or "relay rejected bundle")

        if self.relay.supports_status:
            poller = BundleStatusPoller(
                self.relay, self.config.relay_poll_seconds, self.config.relay_max_polls, self.clock
            )
            status, polls = await poller.wait(submission.bundle_id)
            if status == RelayStatus.PENDING:
                logger.warning(
                    f"No final status for bundle {submission.bundle_id} after {polls} polls, "
                    f"checking the first transaction on the ledger"
                )
                outcome = await self.confirmer.wait(
                    signatures[0], timeout_seconds=self.config.bundle_confirmation_timeout_seconds
                )
                confirmed = outcome.confirmed
                reason = None if confirmed else (
                    f"relay reported pending after {polls} polls, first transaction {outcome.state.value}"
                )
            else:
                confirmed = status == RelayStatus.CONFIRMED
                reason = None if confirmed else f"relay reported {status.value} after {polls} polls"
        else:
            outcome = await self.confirmer.wait(
                signatures[0], timeout_seconds=self.config.bundle_confirmation_timeout_seconds
            )
            confirmed = outcome.confirmed
            reason = None if confirmed else f"first transaction {outcome.state.value}: {outcome.err}"

        if confirmed:
            logger.info(f"Bundle confirmed via {self.relay.name}", extra={"signatures": signatures})
        else:
            logger.error(f"Bundle not confirmed via {self.relay.name}: {reason}")

        return SubmissionResult(
            confirmed=confirmed,
            strategy=SubmissionStrategy.ATOMIC,
            signatures=signatures,
            relay_bundle_id=submission.bundle_id,
            failure_reason=reason,
            simulated=True,
        )

    async def _relay_failed(self, bundle: Bundle, signatures: List[str], reason: str) -> SubmissionResult:
        if self.config.relay_fallback_sequential:
            logger.warning(f"Relay submission failed ({reason}), falling back to sequential sends")
            return await self.submit_sequential(bundle)
        logger.error(f"Relay submission failed: {reason}")
        return SubmissionResult(
            confirmed=False,
            strategy=SubmissionStrategy.ATOMIC,
            signatures=signatures,
            failure_reason=reason,
            simulated=True,
        )

    async def _send(self, batch: TransactionBatch) -> str:
        """Send one batch, rebuilding once if its blockhash is unknown."""
        batch = await self._refresh(batch)
        try:
            return await self.rpc.send_transaction(self.builder.sign(batch), skip_preflight=self.config.skip_preflight)
        except TransactionSendError as e:
            if not is_blockhash_not_found(str(e)):
                raise
            logger.warning(f"Batch {batch.index + 1}: blockhash not found, rebuilding once")
        batch = await self._refresh(batch)
        return await self.rpc.send_transaction(self.builder.sign(batch), skip_preflight=self.config.skip_preflight)

    async def submit_sequential(self, bundle: Bundle) -> SubmissionResult:
        """
        Send batches one by one, confirming each before the next.

        Stops at the first batch that is rejected, fails or times out.
        """
        signatures: List[str] = []
        total = len(bundle.batches)

        for position, batch in enumerate(bundle.batches):
            try:
                signature = await self._send(batch)
            except TransactionSendError as e:
                logger.error(f"Batch {position + 1}/{total} rejected: {e}", extra={"logs": e.logs[-10:]})
                return SubmissionResult(
                    confirmed=False,
                    strategy=SubmissionStrategy.SEQUENTIAL,
                    signatures=signatures,
                    failure_reason=f"batch {position + 1} rejected: {e}",
                    failed_index=position,
                )

            signatures.append(signature)
            logger.info(f"Batch {position + 1}/{total} sent: {signature}")

            outcome = await self.confirmer.wait(signature)
            if outcome.state != ConfirmationState.CONFIRMED:
                reason = f"batch {position + 1} {outcome.state.value}"
                if outcome.err is not None:
                    reason = f"{reason}: {outcome.err}"
                logger.error(
                    f"Stopping sequential submission at batch {position + 1}/{total}: {reason}",
                    extra={"sent": len(signatures), "remaining": total - position - 1}
                )
                return SubmissionResult(
                    confirmed=False,
                    strategy=SubmissionStrategy.SEQUENTIAL,
                    signatures=signatures,
                    failure_reason=reason,
                    failed_index=position,
                )

            if position < total - 1:
                await self.clock.sleep(self.config.inter_tx_delay_seconds)

        logger.info(f"All {total} batches confirmed")
        return SubmissionResult(confirmed=True, strategy=SubmissionStrategy.SEQUENTIAL, signatures=signatures)
