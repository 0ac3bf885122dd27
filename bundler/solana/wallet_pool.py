"""
Wallet pool for bundle runs.

Holds the payer and the participant wallets, and moves SOL between them:
distribute (payer to participants) before a bundle and gather (participants
back to the payer) afterwards.
"""

import math
import random
from typing import Dict, List, Optional, Sequence

from loguru import logger
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from bundler.config import LAMPORTS_PER_SOL, BundlerConfig
from bundler.solana.errors import BundlerConfigError
from bundler.solana.models import (
    CloseAccountsResult,
    DistributionResult,
    GatherResult,
    ManagedWallet,
    WalletRole,
)
from bundler.solana.rpc import LedgerRpc
from bundler.solana.token_program import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    close_account_instruction,
    transfer_instruction,
)
from bundler.solana.tx_executor import TxExecutor
from bundler.utils.wallet_storage import BundlerWalletStorage, decode_keypair


def _chunks(items: Sequence, size: int) -> List[Sequence]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class WalletPool:
    """
    Payer plus participant wallets with fan-out and fan-in helpers.
    """

    def __init__(
        self,
        payer: Keypair,
        participants: List[Keypair],
        rpc: LedgerRpc,
        executor: TxExecutor,
        config: BundlerConfig,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize the wallet pool.

        Args:
            payer: Main wallet paying fees and funding participants
            participants: Participant wallets
            rpc: Ledger RPC capability
            executor: Transaction executor
            config: Run configuration
            rng: Random source for distribution amounts
        """
        self.payer = payer
        self.participants = list(participants)
        self.rpc = rpc
        self.executor = executor
        self.config = config
        self.rng = rng or random.Random()
        logger.info(f"WalletPool initialized with {len(self.participants)} participants, payer {payer.pubkey()}")

    @classmethod
    def from_storage(
        cls,
        config: BundlerConfig,
        rpc: LedgerRpc,
        executor: TxExecutor,
        storage: Optional[BundlerWalletStorage] = None,
        rng: Optional[random.Random] = None
    ) -> "WalletPool":
        """
        Load the payer from config and the participants from the wallet file.

        A missing wallet file is created with BUNDLER_WALLET_COUNT new wallets.

        Raises:
            KeyMaterialError: If any key fails to decode
        """
        storage = storage or BundlerWalletStorage(config.wallets_dir, config.wallet_passphrase)
        payer = decode_keypair(config.main_wallet_private_key)

        participants = storage.load()
        if participants is None:
            participants = [Keypair() for _ in range(config.bundle_wallet_count)]
            storage.save(participants)
            logger.info(f"Generated {len(participants)} new bundler wallets")

        return cls(payer, participants, rpc, executor, config, rng)

    @property
    def size(self) -> int:
        return len(self.participants)

    @property
    def wallets(self) -> List[ManagedWallet]:
        managed = [ManagedWallet(keypair=self.payer, role=WalletRole.PAYER)]
        managed.extend(ManagedWallet(keypair=kp) for kp in self.participants)
        return managed

    def select(self, count: int) -> List[Keypair]:
        """
        Pick the first `count` participants.

        Raises:
            BundlerConfigError: If the pool holds fewer wallets
        """
        if count > self.size:
            raise BundlerConfigError(
                f"Bundle needs {count} wallets but the pool only holds {self.size} "
                f"(raise BUNDLER_WALLET_COUNT or regenerate the wallet file)"
            )
        return self.participants[:count]

    async def balances(self) -> Dict[str, int]:
        result = {}
        for keypair in [self.payer, *self.participants]:
            result[str(keypair.pubkey())] = await self.rpc.get_balance(keypair.pubkey())
        return result

    def _fee_estimate(self, num_signers: int) -> int:
        priority = math.ceil(
            self.config.admin_compute_unit_limit * self.config.admin_compute_unit_price / 1_000_000
        )
        return self.config.tx_fee_lamports * num_signers + priority

    async def distribute(
        self,
        min_sol: Optional[float] = None,
        max_sol: Optional[float] = None,
        wallets: Optional[List[Keypair]] = None
    ) -> DistributionResult:
        """
        Send each participant a random amount of SOL plus the rent buffer.

        Args:
            min_sol: Lower bound per wallet, defaults to SOL_DISTRIBUTE_MIN
            max_sol: Upper bound per wallet, defaults to SOL_DISTRIBUTE_MAX
            wallets: Participants to fund, defaults to the whole pool

        Returns:
            DistributionResult with per-wallet lamports and signatures

        Raises:
            BundlerConfigError: If the payer cannot cover the distribution
        """
        wallets = self.participants if wallets is None else wallets
        low = int((self.config.sol_distribute_min if min_sol is None else min_sol) * LAMPORTS_PER_SOL)
        high = int((self.config.sol_distribute_max if max_sol is None else max_sol) * LAMPORTS_PER_SOL)
        if low > high:
            raise BundlerConfigError("Distribution minimum exceeds maximum")

        amounts = {
            str(kp.pubkey()): self.rng.randint(low, high) + self.config.rent_buffer_lamports
            for kp in wallets
        }
        batches = _chunks(list(wallets), self.config.transfer_batch_size)
        total = sum(amounts.values())
        required = total + len(batches) * self._fee_estimate(1)

        payer_balance = await self.rpc.get_balance(self.payer.pubkey())
        if payer_balance < required:
            raise BundlerConfigError(
                f"Payer balance {payer_balance / LAMPORTS_PER_SOL:.4f} SOL cannot cover "
                f"distribution of {required / LAMPORTS_PER_SOL:.4f} SOL"
            )

        result = DistributionResult(total_lamports=total, per_wallet_lamports=amounts)
        for index, batch in enumerate(batches):
            ixs = [
                transfer_instruction(self.payer.pubkey(), kp.pubkey(), amounts[str(kp.pubkey())])
                for kp in batch
            ]
            signature = await self.executor.execute(
                ixs, self.payer, label=f"distribute {index + 1}/{len(batches)}"
            )
            result.signatures.append(signature)

        logger.info(
            f"Distributed {total / LAMPORTS_PER_SOL:.4f} SOL to {len(wallets)} wallets",
            extra={"total_lamports": total, "tx_count": len(batches)}
        )
        return result

    async def gather(self, wallets: Optional[List[Keypair]] = None) -> GatherResult:
        """
        Return participant SOL to the payer.

        Every wallet keeps GATHER_MIN_KEEP_SOL. The wallet with the largest
        balance in each transaction pays its fee and also keeps the fee.

        Returns:
            GatherResult with the gathered lamports and signatures
        """
        wallets = self.participants if wallets is None else wallets
        keep = self.config.gather_min_keep_lamports

        funded = []
        for keypair in wallets:
            balance = await self.rpc.get_balance(keypair.pubkey())
            if balance > keep:
                funded.append((keypair, balance))
            else:
                logger.debug(f"Skipping {keypair.pubkey()}: balance {balance} at or below keep amount")

        result = GatherResult()
        batches = _chunks(funded, self.config.transfer_batch_size)
        for index, batch in enumerate(batches):
            batch = sorted(batch, key=lambda item: item[1], reverse=True)
            fee = self._fee_estimate(len(batch))
            fee_payer, fee_payer_balance = batch[0]
            if fee_payer_balance - keep < fee:
                logger.warning(f"Gather batch {index + 1}: no wallet can cover the fee, skipping")
                continue

            ixs = []
            signers = []
            moved = 0
            for position, (keypair, balance) in enumerate(batch):
                amount = balance - keep - (fee if position == 0 else 0)
                if amount <= 0:
                    continue
                ixs.append(transfer_instruction(keypair.pubkey(), self.payer.pubkey(), amount))
                signers.append(keypair)
                moved += amount
            if not ixs:
                continue

            signature = await self.executor.execute(
                ixs, fee_payer, signers, label=f"gather {index + 1}/{len(batches)}"
            )
            result.signatures.append(signature)
            result.gathered_lamports += moved
            result.tx_count += 1

        logger.info(
            f"Gathered {result.gathered_lamports / LAMPORTS_PER_SOL:.4f} SOL in {result.tx_count} transactions",
            extra={"gathered_lamports": result.gathered_lamports}
        )
        return result

    async def close_empty_token_accounts(self, owner: Optional[Keypair] = None) -> CloseAccountsResult:
        """
        Close the owner's zero-balance token accounts and reclaim their rent.

        Both the legacy token program and Token-2022 are scanned.

        Args:
            owner: Wallet whose accounts are closed, defaults to the payer

        Returns:
            CloseAccountsResult
        """
        owner = owner or self.payer
        result = CloseAccountsResult()

        empty = []
        for program_id in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            for account in await self.rpc.get_token_accounts(owner.pubkey(), program_id):
                if account.amount > 0:
                    result.skipped_non_zero += 1
                else:
                    empty.append(account)

        for batch in _chunks(empty, self.config.transfer_batch_size):
            ixs = [
                close_account_instruction(
                    Pubkey.from_string(account.address),
                    owner.pubkey(),
                    owner.pubkey(),
                    Pubkey.from_string(account.program_id)
                )
                for account in batch
            ]
            await self.executor.execute(ixs, owner, label="close token accounts")
            result.closed += len(batch)
            result.reclaimed_lamports += sum(account.lamports for account in batch)
            result.tx_count += 1

        logger.info(
            f"Closed {result.closed} empty token accounts for {owner.pubkey()}, "
            f"skipped {result.skipped_non_zero} with balance",
            extra={"closed": result.closed, "reclaimed_lamports": result.reclaimed_lamports}
        )
        return result
