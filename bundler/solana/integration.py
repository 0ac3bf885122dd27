"""
Integration module that combines the bundler components.

BundleOrchestrator wires the wallet pool, lookup table manager, batch
builder and submission engine into the end-to-end flows: create a token and
bundle-buy it, bundle-buy an existing token, move SOL in and out of the
participant wallets, and clean up lookup tables and token accounts.
"""

import asyncio
import random
from typing import Dict, List, Optional

from loguru import logger
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from bundler.config import LAMPORTS_PER_SOL, BundlerConfig
from bundler.solana.batch_builder import TransactionBatchBuilder
from bundler.solana.clock import Clock, SYSTEM_CLOCK
from bundler.solana.errors import BundlerConfigError, LookupTableCooldownError, LookupTableNotFoundError
from bundler.solana.lookup_table import LookupTableManager
from bundler.solana.models import (
    Bundle,
    CloseAccountsResult,
    CloseTablesResult,
    DistributionResult,
    GatherResult,
    InstructionGroup,
    LookupTableAccountInfo,
    RunRecord,
    SubmissionResult,
    SubmissionStrategy,
)
from bundler.solana.relays import Relay, create_relay
from bundler.solana.rpc import LedgerRpc, SolanaLedgerRpc
from bundler.solana.sdk import InstructionSdk
from bundler.solana.submission import BundleSubmissionEngine
from bundler.solana.token_program import create_associated_token_account_instruction, get_associated_token_address
from bundler.solana.tx_executor import TxExecutor
from bundler.solana.wallet_pool import WalletPool
from bundler.state.run_state import JsonRunStateStore, RunStateStore


def parse_mint(value: Optional[str]) -> Pubkey:
    """
    Parse a mint address given on the command line or in the environment.

    Raises:
        BundlerConfigError: If the address is missing or malformed
    """
    if not value:
        raise BundlerConfigError("MINT_PUBLIC_KEY is required when working on an existing token")
    try:
        return Pubkey.from_string(value.strip())
    except ValueError as e:
        raise BundlerConfigError(f"Invalid mint address {value!r}: {e}") from e


class BundleOrchestrator:
    """
    Runs the bundler flows.

    Runs for the same mint are serialized with a per-mint lock.
    """

    def __init__(
        self,
        config: BundlerConfig,
        sdk: InstructionSdk,
        rpc: Optional[LedgerRpc] = None,
        store: Optional[RunStateStore] = None,
        wallet_pool: Optional[WalletPool] = None,
        relay: Optional[Relay] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Run configuration
            sdk: Instruction SDK for the launchpad program
            rpc: Optional LedgerRpc. If None, creates a SolanaLedgerRpc.
            store: Optional run state store. If None, uses STATE_FILE.
            wallet_pool: Optional WalletPool. If None, loads it from WALLETS_DIR.
            relay: Optional relay. If None, one is created on mainnet from BUNDLE_PROVIDER.
            clock: Clock for delays and polling
            rng: Random source for buy amounts and tip accounts
        """
        self.config = config
        self.sdk = sdk
        self.clock = clock or SYSTEM_CLOCK
        self.rng = rng or random.Random()

        self.rpc = rpc if rpc else SolanaLedgerRpc(config, clock=self.clock)
        self.store = store if store else JsonRunStateStore(config.state_file)
        self.executor = TxExecutor(self.rpc, config, self.clock)
        self.wallet_pool = wallet_pool if wallet_pool else WalletPool.from_storage(
            config, self.rpc, self.executor, rng=self.rng
        )
        if relay is None and config.is_mainnet:
            relay = create_relay(config, clock=self.clock)
        self.relay = relay

        self.lookup_tables = LookupTableManager(
            self.rpc,
            self.executor,
            self.store,
            sdk,
            config,
            tip_accounts=relay.tip_accounts if relay else (),
            clock=self.clock,
        )
        self.builder = TransactionBatchBuilder(config)
        self.engine = BundleSubmissionEngine(
            self.rpc, self.builder, config, relay=relay, clock=self.clock, rng=self.rng
        )

        self._locks: Dict[str, asyncio.Lock] = {}
        logger.info(f"BundleOrchestrator initialized on {config.cluster}")

    @property
    def payer(self) -> Keypair:
        return self.wallet_pool.payer

    def lock_for(self, mint: str) -> asyncio.Lock:
        return self._locks.setdefault(mint, asyncio.Lock())

    def buy_lamports(self) -> int:
        """Random buy size, capped below the smallest distribution so fees still fit."""
        amount = self.rng.uniform(self.config.bundle_buy_sol_min, self.config.bundle_buy_sol_max)
        cap = self.config.sol_distribute_min * self.config.buy_fraction_of_min_distribution
        return int(min(amount, cap) * LAMPORTS_PER_SOL)

    async def _buy_groups(self, mint: Pubkey, creator: Pubkey, participants: List[Keypair]) -> List[InstructionGroup]:
        groups = []
        for index, wallet in enumerate(participants):
            create_ata = create_associated_token_account_instruction(
                self.payer.pubkey(), wallet.pubkey(), mint, self.sdk.token_program_id, idempotent=True
            )
            buy = await self.sdk.build_buy_instructions(mint, creator, wallet.pubkey(), self.buy_lamports())
            groups.append(InstructionGroup(
                label=f"wallet {index + 1} {wallet.pubkey()}",
                instructions=[create_ata, *buy],
                signers=[wallet],
            ))
        return groups

    async def _prepare_table(self, mint: Pubkey, creator: Pubkey,
                             participants: List[Keypair]) -> LookupTableAccountInfo:
        address = await self.lookup_tables.ensure_table(
            mint, self.payer, [w.pubkey() for w in participants], creator
        )
        return await self.lookup_tables.load_table(address)

    def _mark_created(self, mint: str, created: bool) -> None:
        run = self.store.get(mint) or RunRecord(mint=mint)
        run.created = created
        self.store.put(mint, run)

    async def create_token_and_bundle_buy(self, mint_keypair: Keypair,
                                          wallet_count: Optional[int] = None) -> SubmissionResult:
        """
        Create a token and buy it from every participant in one bundle.

        The first transaction creates the token and is the one simulated;
        the following transactions each create token accounts and buy for
        up to WALLETS_PER_TX wallets.

        Args:
            mint_keypair: Keypair of the new mint (signs the create transaction)
            wallet_count: Number of participants, defaults to BUNDLER_WALLET_COUNT

        Returns:
            SubmissionResult

        Raises:
            BundlerConfigError: Not enough wallets, or the bundle does not fit the relay
            SimulationFailedError: The create transaction failed its dry run
        """
        participants = self.wallet_pool.select(wallet_count or self.config.bundle_wallet_count)
        mint = mint_keypair.pubkey()
        mint_key = str(mint)

        async with self.lock_for(mint_key):
            logger.info(f"Starting create-and-buy bundle for {mint_key} with {len(participants)} wallets")

            if await self.sdk.token_exists(mint):
                logger.warning(f"Token {mint_key} already exists on-chain, use a new mint keypair")
                return SubmissionResult(
                    confirmed=False,
                    strategy=self.engine.default_strategy(),
                    failure_reason="token already exists on-chain",
                )

            run = self.store.get(mint_key)
            if run is not None and run.created:
                logger.warning(f"Run state marks {mint_key} as created but the token is not on-chain, resetting")
                self._mark_created(mint_key, False)

            creator = self.payer.pubkey()
            table = await self._prepare_table(mint, creator, participants)

            create_ixs = await self.sdk.build_create_instructions(mint, creator)
            groups = await self._buy_groups(mint, creator, participants)

            blockhash = (await self.rpc.get_latest_blockhash()).blockhash
            create_batch = self.builder.build_single(
                create_ixs, self.payer, [mint_keypair], blockhash, table, index=0, label="create token"
            )
            buy_batches = self.builder.pack(
                groups, self.payer, blockhash, table, pool_size=self.wallet_pool.size, start_index=1
            )
            bundle = Bundle(
                batches=[create_batch, *buy_batches],
                payer=self.payer,
                critical_index=0,
                lookup_table_address=table.address,
            )
            logger.info(f"Built bundle of {len(bundle.batches)} transactions for {mint_key}")

            result = await self.engine.submit(bundle)
            if result.confirmed:
                self._mark_created(mint_key, True)
            return result

    async def bundle_buy_only(self, mint: Optional[str] = None,
                              wallet_count: Optional[int] = None) -> SubmissionResult:
        """
        Bundle-buy an existing token from every participant.

        Args:
            mint: Mint address, defaults to MINT_PUBLIC_KEY
            wallet_count: Number of participants, defaults to BUNDLER_WALLET_COUNT

        Raises:
            BundlerConfigError: Missing or unknown mint, or not enough wallets
        """
        mint_key = mint or self.config.mint_public_key
        mint_pubkey = parse_mint(mint_key)
        mint_key = str(mint_pubkey)
        participants = self.wallet_pool.select(wallet_count or self.config.bundle_wallet_count)

        async with self.lock_for(mint_key):
            if not await self.sdk.token_exists(mint_pubkey):
                raise BundlerConfigError(f"Token {mint_key} does not exist on-chain")

            creator = await self.sdk.fetch_creator(mint_pubkey)
            logger.info(f"Starting buy-only bundle for {mint_key} (creator {creator}) with {len(participants)} wallets")
            table = await self._prepare_table(mint_pubkey, creator, participants)

            groups = await self._buy_groups(mint_pubkey, creator, participants)
            blockhash = (await self.rpc.get_latest_blockhash()).blockhash
            batches = self.builder.pack(groups, self.payer, blockhash, table, pool_size=self.wallet_pool.size)
            bundle = Bundle(
                batches=batches,
                payer=self.payer,
                critical_index=0,
                lookup_table_address=table.address,
            )
            return await self.engine.submit(bundle)

    async def create_token_accounts(self, mint: Optional[str] = None,
                                    wallet_count: Optional[int] = None) -> SubmissionResult:
        """
        Pre-create the participants' token accounts for an existing token.

        Moving account creation out of the bundle leaves more room for buys.
        Owners that already hold an account are skipped; the rest get
        idempotent create instructions packed by size into transactions
        compiled against the mint's lookup table and signed by the payer only.

        Args:
            mint: Mint address, defaults to MINT_PUBLIC_KEY
            wallet_count: Number of participants, defaults to BUNDLER_WALLET_COUNT

        Returns:
            SubmissionResult of the sequential sends

        Raises:
            BundlerConfigError: Missing or unknown mint, or not enough wallets
        """
        mint_pubkey = parse_mint(mint or self.config.mint_public_key)
        mint_key = str(mint_pubkey)
        participants = self.wallet_pool.select(wallet_count or self.config.bundle_wallet_count)

        async with self.lock_for(mint_key):
            if not await self.sdk.token_exists(mint_pubkey):
                raise BundlerConfigError(f"Token {mint_key} does not exist on-chain")

            creator = await self.sdk.fetch_creator(mint_pubkey)
            table = await self._prepare_table(mint_pubkey, creator, participants)

            token_program = self.sdk.token_program_id
            groups = []
            for wallet in participants:
                owner = wallet.pubkey()
                ata = get_associated_token_address(owner, mint_pubkey, token_program)
                if await self.rpc.get_account_data(ata) is not None:
                    continue
                groups.append(InstructionGroup(
                    label=f"token account {ata}",
                    instructions=[create_associated_token_account_instruction(
                        self.payer.pubkey(), owner, mint_pubkey, token_program, idempotent=True
                    )],
                ))

            skipped = len(participants) - len(groups)
            if not groups:
                logger.info(f"All {len(participants)} participants already hold a {mint_key} token account")
                return SubmissionResult(confirmed=True, strategy=SubmissionStrategy.SEQUENTIAL)

            blockhash = (await self.rpc.get_latest_blockhash()).blockhash
            batches = self.builder.pack(groups, self.payer, blockhash, table, max_groups=len(groups))
            logger.info(
                f"Creating {len(groups)} token accounts for {mint_key} in {len(batches)} transactions "
                f"({skipped} already exist)",
                extra={"mint": mint_key, "created": len(groups), "skipped": skipped}
            )
            bundle = Bundle(batches=batches, payer=self.payer, lookup_table_address=table.address)
            return await self.engine.submit_sequential(bundle)

    async def distribute(self, min_sol: Optional[float] = None, max_sol: Optional[float] = None) -> DistributionResult:
        return await self.wallet_pool.distribute(min_sol, max_sol)

    async def gather(self) -> GatherResult:
        return await self.wallet_pool.gather()

    async def close_token_accounts(self) -> CloseAccountsResult:
        return await self.wallet_pool.close_empty_token_accounts(self.payer)

    async def close_lookup_tables(self, addresses: Optional[List[str]] = None) -> CloseTablesResult:
        """
        Deactivate or close every known lookup table.

        Active tables are deactivated and reported for a later close. Tables
        past their cooldown are closed with the rent returned to the payer.
        Tables still cooling down are counted as retry later.

        Args:
            addresses: Tables to process, defaults to every table in the run state

        Returns:
            CloseTablesResult counts
        """
        addresses = addresses if addresses is not None else self.store.known_tables()
        result = CloseTablesResult()

        for address in addresses:
            try:
                info = await self.lookup_tables.verify(address)
                if info is None:
                    result.skipped += 1
                    self.store.forget_table(address)
                    continue

                if info.is_active:
                    await self.lookup_tables.deactivate(address, self.payer)
                    result.deactivated += 1
                    logger.info(f"Lookup table {address} deactivated, close it after the cooldown")
                    continue

                await self.lookup_tables.close(address, self.payer, self.payer.pubkey())
                result.closed += 1
                self.store.forget_table(address)
            except LookupTableCooldownError as e:
                result.retry_later += 1
                logger.warning(f"Retry later: {e}")
            except LookupTableNotFoundError:
                result.skipped += 1
                self.store.forget_table(address)

        logger.info(
            f"Lookup tables: {result.deactivated} deactivated, {result.closed} closed, "
            f"{result.retry_later} retry later, {result.skipped} skipped",
            extra=result.model_dump()
        )
        return result

    async def close(self) -> None:
        close = getattr(self.rpc, "close", None)
        if close is not None:
            await close()
