"""
Tests for atomic and sequential bundle submission.
"""

import random

import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from bundler.solana.batch_builder import TransactionBatchBuilder
from bundler.solana.errors import (
    BundlerConfigError,
    RelayError,
    RelayRejectedError,
    SimulationFailedError,
    TransactionSendError,
)
from bundler.solana.models import (
    Bundle,
    InstructionGroup,
    RelayStatus,
    RelaySubmission,
    SignatureStatus,
    SimulationResult,
    SubmissionStrategy,
)
from bundler.solana.relays import BundleStatusPoller
from bundler.solana.submission import BundleSubmissionEngine

from tests.conftest import ScriptedRelay, make_keypairs

PROGRAM = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")


def make_bundle(config, payer, wallet_count=3):
    groups = []
    for wallet in make_keypairs(wallet_count, offset=80):
        ix = Instruction(
            program_id=PROGRAM,
            data=b"buy",
            accounts=[AccountMeta(pubkey=wallet.pubkey(), is_signer=True, is_writable=True)],
        )
        groups.append(InstructionGroup(label=str(wallet.pubkey()), instructions=[ix], signers=[wallet]))
    one_per_tx = TransactionBatchBuilder(config.model_copy(update={"wallets_per_tx": 1}))
    batches = one_per_tx.pack(groups, payer, Hash.new_unique())
    return Bundle(batches=batches, payer=payer)


def engine_for(ledger, config, clock, relay=None):
    return BundleSubmissionEngine(
        ledger, TransactionBatchBuilder(config), config, relay=relay, clock=clock, rng=random.Random(1)
    )


class LandingRelay(ScriptedRelay):
    """Relay whose transactions land on the fake ledger; fire-and-wait unless statuses are given."""

    def __init__(self, ledger, statuses=None):
        super().__init__(statuses, supports_status=statuses is not None)
        self.ledger = ledger

    async def submit(self, transactions):
        self.submitted.append(list(transactions))
        for tx in transactions:
            signature = str(tx.signatures[0])
            self.ledger.statuses[signature] = SignatureStatus(signature=signature, confirmation_status="confirmed")
        bundle_id = f"bundle-{len(self.submitted)}" if self.supports_status else None
        return RelaySubmission(accepted=True, bundle_id=bundle_id)


class TestStrategy:
    def test_default_strategy(self, ledger, config, mainnet_config, clock):
        relay = ScriptedRelay()
        assert engine_for(ledger, config, clock, relay).default_strategy() == SubmissionStrategy.SEQUENTIAL
        assert engine_for(ledger, mainnet_config, clock).default_strategy() == SubmissionStrategy.SEQUENTIAL
        assert engine_for(ledger, mainnet_config, clock, relay).default_strategy() == SubmissionStrategy.ATOMIC


class TestAtomic:
    @pytest.mark.asyncio
    async def test_relay_confirms_after_three_polls(self, ledger, mainnet_config, clock, payer):
        relay = ScriptedRelay([RelayStatus.PENDING, RelayStatus.PENDING, RelayStatus.CONFIRMED])
        bundle = make_bundle(mainnet_config, payer)

        result = await engine_for(ledger, mainnet_config, clock, relay).submit(bundle)

        assert result.confirmed
        assert result.strategy == SubmissionStrategy.ATOMIC
        assert relay.status_calls == 3
        assert result.relay_bundle_id == "bundle-1"
        assert len(relay.submitted[0]) == 4  # three batches plus the tip
        assert len(ledger.simulated) == 1
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_tip_is_last_and_pays_tip_account(self, ledger, mainnet_config, clock, payer):
        relay = ScriptedRelay()
        bundle = make_bundle(mainnet_config, payer, wallet_count=2)

        await engine_for(ledger, mainnet_config, clock, relay).submit_atomic(bundle)

        tip_tx = relay.submitted[0][-1]
        assert Pubkey.from_string(relay.tip_accounts[0]) in tip_tx.message.account_keys
        assert tip_tx.message.account_keys[0] == payer.pubkey()

    @pytest.mark.asyncio
    async def test_simulation_error_aborts_before_sending(self, ledger, mainnet_config, clock, payer):
        relay = ScriptedRelay()
        ledger.simulation = SimulationResult(
            err="InstructionError(1, Custom(6002))",
            logs=[f"Program log: line {i}" for i in range(30)]
        )

        with pytest.raises(SimulationFailedError) as exc_info:
            await engine_for(ledger, mainnet_config, clock, relay).submit(make_bundle(mainnet_config, payer))

        assert exc_info.value.index == 0
        assert len(exc_info.value.logs) == 30
        assert relay.submitted == []
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_bundle_too_large_for_relay(self, ledger, mainnet_config, clock, payer):
        relay = ScriptedRelay()
        with pytest.raises(BundlerConfigError):
            await engine_for(ledger, mainnet_config, clock, relay).submit_atomic(
                make_bundle(mainnet_config, payer, wallet_count=5)
            )
        assert ledger.simulated == []

    @pytest.mark.asyncio
    async def test_simulate_only(self, ledger, mainnet_config, clock, payer):
        relay = ScriptedRelay()
        config = mainnet_config.model_copy(update={"simulate_only": True})

        result = await engine_for(ledger, config, clock, relay).submit_atomic(make_bundle(config, payer))

        assert result.simulated
        assert not result.confirmed
        assert relay.submitted == []

    @pytest.mark.asyncio
    async def test_relay_rejection_falls_back_to_sequential(self, ledger, mainnet_config, clock, payer):
        relay = ScriptedRelay(submit_error=RelayRejectedError("jito rejected bundle: bad tip"))

        result = await engine_for(ledger, mainnet_config, clock, relay).submit_atomic(
            make_bundle(mainnet_config, payer)
        )

        assert result.confirmed
        assert result.strategy == SubmissionStrategy.SEQUENTIAL
        assert len(ledger.sent) == 3

    @pytest.mark.asyncio
    async def test_relay_rejection_without_fallback(self, ledger, mainnet_config, clock, payer):
        relay = ScriptedRelay(submit_error=RelayRejectedError("jito rejected bundle"))
        config = mainnet_config.model_copy(update={"relay_fallback_sequential": False})

        result = await engine_for(ledger, config, clock, relay).submit_atomic(make_bundle(config, payer))

        assert not result.confirmed
        assert "rejected" in result.failure_reason
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_fire_and_wait_relay_confirms_on_ledger(self, ledger, mainnet_config, clock, payer):
        relay = LandingRelay(ledger)

        result = await engine_for(ledger, mainnet_config, clock, relay).submit_atomic(
            make_bundle(mainnet_config, payer)
        )

        assert result.confirmed
        assert result.relay_bundle_id is None
        assert relay.status_calls == 0
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_status_error_after_acceptance_keeps_polling(self, ledger, mainnet_config, clock, payer):
        relay = ScriptedRelay([RelayError("jito status error: upstream timeout"), RelayStatus.CONFIRMED])

        result = await engine_for(ledger, mainnet_config, clock, relay).submit_atomic(
            make_bundle(mainnet_config, payer)
        )

        assert result.confirmed
        assert result.relay_bundle_id == "bundle-1"
        assert relay.status_calls == 2
        assert clock.sleeps == [mainnet_config.relay_poll_seconds]

    @pytest.mark.asyncio
    async def test_missing_relay_status_is_confirmed_on_ledger(self, ledger, mainnet_config, clock, payer):
        relay = LandingRelay(ledger, [RelayRejectedError("jito HTTP 503: unavailable")])

        result = await engine_for(ledger, mainnet_config, clock, relay).submit_atomic(
            make_bundle(mainnet_config, payer)
        )

        assert result.confirmed
        assert result.relay_bundle_id == "bundle-1"
        assert relay.status_calls == mainnet_config.relay_max_polls
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_missing_relay_status_keeps_bundle_id(self, ledger, mainnet_config, clock, payer):
        relay = ScriptedRelay([RelayError("jito status error: boom")])

        result = await engine_for(ledger, mainnet_config, clock, relay).submit_atomic(
            make_bundle(mainnet_config, payer)
        )

        assert not result.confirmed
        assert result.relay_bundle_id == "bundle-1"
        assert len(result.signatures) == 4
        assert result.failure_reason.startswith("relay reported pending")


class TestSequential:
    @pytest.mark.asyncio
    async def test_all_batches_confirmed(self, ledger, config, clock, payer):
        result = await engine_for(ledger, config, clock).submit(make_bundle(config, payer))

        assert result.confirmed
        assert len(result.signatures) == 3
        assert clock.sleeps.count(0.5) == 2  # between batches only

    @pytest.mark.asyncio
    async def test_stops_when_second_batch_times_out(self, ledger, config, clock, payer):
        ledger.never_land = {1}

        result = await engine_for(ledger, config, clock).submit(make_bundle(config, payer))

        assert not result.confirmed
        assert result.failed_index == 1
        assert result.failure_reason.startswith("batch 2 timed_out")
        assert len(ledger.sent) == 2
        assert len(result.signatures) == 2

    @pytest.mark.asyncio
    async def test_on_chain_failure_stops(self, ledger, config, clock, payer):
        ledger.fail_sends = {0: "InstructionError(0, Custom(1))"}

        result = await engine_for(ledger, config, clock).submit(make_bundle(config, payer))

        assert result.failed_index == 0
        assert "Custom(1)" in result.failure_reason
        assert len(ledger.sent) == 1

    @pytest.mark.asyncio
    async def test_rejected_send_stops(self, ledger, config, clock, payer):
        ledger.send_errors = [TransactionSendError("insufficient funds for rent")]

        result = await engine_for(ledger, config, clock).submit(make_bundle(config, payer))

        assert result.failed_index == 0
        assert "rejected" in result.failure_reason
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_stale_blockhash_rebuilt_once(self, ledger, config, clock, payer):
        ledger.send_errors = [TransactionSendError("Transaction simulation failed: Blockhash not found")]

        result = await engine_for(ledger, config, clock).submit(make_bundle(config, payer, wallet_count=1))

        assert result.confirmed
        assert len(ledger.sent) == 1


class TestBundleStatusPoller:
    @pytest.mark.asyncio
    async def test_stops_at_terminal_status(self, clock):
        relay = ScriptedRelay([RelayStatus.PENDING, RelayStatus.DROPPED])

        status, polls = await BundleStatusPoller(relay, 2.0, 10, clock).wait("bundle-1")

        assert status == RelayStatus.DROPPED
        assert polls == 2
        assert clock.sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_poll_budget(self, clock):
        relay = ScriptedRelay([RelayStatus.PENDING])

        status, polls = await BundleStatusPoller(relay, 2.0, 4, clock).wait("bundle-1")

        assert status == RelayStatus.PENDING
        assert polls == 4
        assert len(clock.sleeps) == 3

    @pytest.mark.asyncio
    async def test_status_errors_count_as_pending_polls(self, clock):
        relay = ScriptedRelay([RelayError("status error"), RelayStatus.PENDING, RelayStatus.DROPPED])

        status, polls = await BundleStatusPoller(relay, 2.0, 10, clock).wait("bundle-1")

        assert status == RelayStatus.DROPPED
        assert polls == 3
