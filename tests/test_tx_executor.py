"""
Tests for single transaction execution.
"""

import pytest
from solders.hash import Hash

from bundler.solana.errors import BundlerConfigError, ConfirmationTimeoutError, TransactionSendError
from bundler.solana.token_program import COMPUTE_BUDGET_PROGRAM_ID, transfer_instruction
from bundler.solana.tx_executor import compile_message, serialized_size, sign_message

from tests.conftest import make_keypairs


@pytest.fixture
def recipient():
    return make_keypairs(1, offset=120)[0]


class TestExecute:
    @pytest.mark.asyncio
    async def test_transfer_lands_with_compute_budget(self, executor, ledger, payer, recipient):
        signature = await executor.execute([transfer_instruction(payer.pubkey(), recipient.pubkey(), 12345)], payer)

        assert ledger.balances[str(recipient.pubkey())] == 12345
        assert signature == str(ledger.sent[0].signatures[0])
        assert COMPUTE_BUDGET_PROGRAM_ID in ledger.sent[0].message.account_keys

    @pytest.mark.asyncio
    async def test_stale_blockhash_is_rebuilt_once(self, executor, ledger, payer, recipient):
        ledger.send_errors = [TransactionSendError("Blockhash not found")]

        await executor.execute([transfer_instruction(payer.pubkey(), recipient.pubkey(), 1)], payer)

        assert len(ledger.sent) == 1

    @pytest.mark.asyncio
    async def test_second_stale_blockhash_propagates(self, executor, ledger, payer, recipient):
        ledger.send_errors = [TransactionSendError("Blockhash not found")] * 2

        with pytest.raises(TransactionSendError):
            await executor.execute([transfer_instruction(payer.pubkey(), recipient.pubkey(), 1)], payer)

    @pytest.mark.asyncio
    async def test_unconfirmed_transaction_raises(self, executor, ledger, payer, recipient):
        ledger.never_land = {0}

        with pytest.raises(ConfirmationTimeoutError):
            await executor.execute([transfer_instruction(payer.pubkey(), recipient.pubkey(), 1)], payer)


class TestSigning:
    def test_missing_signer(self, payer, recipient):
        message = compile_message(
            [transfer_instruction(recipient.pubkey(), payer.pubkey(), 1)], payer, Hash.new_unique()
        )
        with pytest.raises(BundlerConfigError):
            sign_message(message, [payer])

    def test_extra_and_duplicate_signers_are_ignored(self, payer, recipient):
        message = compile_message(
            [transfer_instruction(payer.pubkey(), recipient.pubkey(), 1)], payer, Hash.new_unique()
        )
        tx = sign_message(message, [payer, payer, recipient])

        assert len(tx.signatures) == 1
        assert len(bytes(tx)) == serialized_size(message)
