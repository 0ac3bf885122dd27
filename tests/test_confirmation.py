"""
Tests for signature confirmation polling.
"""

import pytest

from bundler.solana.confirmation import ConfirmationState, SignatureConfirmer, next_state
from bundler.solana.errors import ConfirmationTimeoutError, RpcError, TransactionFailedError
from bundler.solana.models import SignatureStatus

SIG = "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW"


class ScriptedStatuses:
    """Returns one scripted observation per poll, repeating the last one."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    async def get_signature_status(self, signature):
        self.calls += 1
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


def status(confirmation_status="confirmed", err=None):
    return SignatureStatus(signature=SIG, confirmation_status=confirmation_status, err=err)


def confirmer(rpc, clock, timeout=10.0):
    return SignatureConfirmer(rpc, timeout_seconds=timeout, poll_interval_seconds=1.0, clock=clock)


class TestNextState:
    def test_transitions(self):
        assert next_state(None, False) == ConfirmationState.WAITING
        assert next_state(None, True) == ConfirmationState.TIMED_OUT
        assert next_state(status("processed"), False) == ConfirmationState.WAITING
        assert next_state(status("finalized"), False) == ConfirmationState.CONFIRMED
        assert next_state(status("processed", err="boom"), False) == ConfirmationState.FAILED
        assert next_state(status("confirmed"), False, commitment="finalized") == ConfirmationState.WAITING


class TestSignatureConfirmer:
    @pytest.mark.asyncio
    async def test_confirms_once_status_arrives(self, clock):
        rpc = ScriptedStatuses([None, status("processed"), status("confirmed")])

        outcome = await confirmer(rpc, clock).wait(SIG)

        assert outcome.state == ConfirmationState.CONFIRMED
        assert outcome.confirmed
        assert outcome.polls == 3
        assert clock.sleeps == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_times_out_when_never_seen(self, clock):
        rpc = ScriptedStatuses([None])
        start = clock.now

        outcome = await confirmer(rpc, clock, timeout=10.0).wait(SIG)

        assert outcome.state == ConfirmationState.TIMED_OUT
        assert clock.now - start == pytest.approx(10.0)
        assert rpc.calls == 11
        with pytest.raises(ConfirmationTimeoutError):
            await confirmer(ScriptedStatuses([None]), clock, timeout=3.0).wait_or_raise(SIG)

    @pytest.mark.asyncio
    async def test_last_sleep_is_clipped_to_deadline(self, clock):
        rpc = ScriptedStatuses([None])
        checker = SignatureConfirmer(rpc, timeout_seconds=2.5, poll_interval_seconds=1.0, clock=clock)

        outcome = await checker.wait(SIG)

        assert outcome.state == ConfirmationState.TIMED_OUT
        assert clock.sleeps == [1.0, 1.0, 0.5]

    @pytest.mark.asyncio
    async def test_block_height_exceeded_keeps_waiting(self, clock):
        rpc = ScriptedStatuses([RpcError("TransactionExpiredBlockheightExceededError: block height exceeded"),
                                status("confirmed")])

        outcome = await confirmer(rpc, clock).wait(SIG)

        assert outcome.confirmed
        assert outcome.polls == 2

    @pytest.mark.asyncio
    async def test_other_rpc_errors_propagate(self, clock):
        rpc = ScriptedStatuses([RpcError("connection reset")])
        with pytest.raises(RpcError):
            await confirmer(rpc, clock).wait(SIG)

    @pytest.mark.asyncio
    async def test_on_chain_error(self, clock):
        rpc = ScriptedStatuses([status("confirmed", err="InstructionError(2, Custom(6001))")])

        outcome = await confirmer(rpc, clock).wait(SIG)
        assert outcome.state == ConfirmationState.FAILED

        with pytest.raises(TransactionFailedError) as exc_info:
            await confirmer(rpc, clock).wait_or_raise(SIG)
        assert "6001" in str(exc_info.value.err)

    def test_rejects_unknown_commitment(self, clock):
        with pytest.raises(ValueError):
            SignatureConfirmer(ScriptedStatuses([None]), 1.0, 1.0, clock, commitment="rooted")
