"""
Lookup table lifecycle management.

A bundle references more accounts than a transaction can address directly,
so every account the bundle touches is registered in one address lookup
table bound to the bundle's mint. The manager creates, extends, verifies,
deactivates and closes those tables and keeps their records in the run state
store.
"""

from typing import Iterable, Iterator, List, Optional, Sequence

from loguru import logger
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from bundler.config import BundlerConfig
from bundler.solana.clock import Clock, SYSTEM_CLOCK
from bundler.solana.errors import (
    BundlerConfigError,
    ConfirmationError,
    LookupTableCooldownError,
    LookupTableNotFoundError,
    LookupTableStateError,
    TransactionSendError,
)
from bundler.solana.lookup_table_program import (
    LOOKUP_TABLE_MAX_ADDRESSES,
    close_lookup_table_instruction,
    create_lookup_table_instruction,
    deactivate_lookup_table_instruction,
    decode_lookup_table_account,
    extend_lookup_table_instruction,
)
from bundler.solana.models import LookupTableAccountInfo, LookupTableRecord, RunRecord, TableState
from bundler.solana.rpc import LedgerRpc
from bundler.solana.sdk import InstructionSdk
from bundler.solana.token_program import ASSOCIATED_TOKEN_PROGRAM_ID, get_associated_token_address
from bundler.solana.tx_executor import TxExecutor
from bundler.state.run_state import RunStateStore

COOLDOWN_MARKERS = ("accountnotdeactivated", "not deactivated", "deactivat", "cooldown")


class AddressSet:
    """Insertion-ordered set of account addresses."""

    def __init__(self, addresses: Iterable[Pubkey] = ()):
        self._seen = set()
        self._ordered: List[Pubkey] = []
        self.extend(addresses)

    def add(self, address: Pubkey) -> bool:
        key = str(address)
        if key in self._seen:
            return False
        self._seen.add(key)
        self._ordered.append(address)
        return True

    def extend(self, addresses: Iterable[Pubkey]) -> None:
        for address in addresses:
            self.add(address)

    def missing_from(self, existing: Iterable[str]) -> List[Pubkey]:
        """Addresses of this set that are not in `existing`, in order."""
        present = set(existing)
        return [a for a in self._ordered if str(a) not in present]

    def as_list(self) -> List[Pubkey]:
        return list(self._ordered)

    def __contains__(self, address) -> bool:
        return str(address) in self._seen

    def __iter__(self) -> Iterator[Pubkey]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)


def _is_cooldown_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in COOLDOWN_MARKERS)


class LookupTableManager:
    """
    Owns the lifecycle of the lookup table shared by a bundle.
    """

    def __init__(
        self,
        rpc: LedgerRpc,
        executor: TxExecutor,
        store: RunStateStore,
        sdk: InstructionSdk,
        config: BundlerConfig,
        tip_accounts: Sequence[str] = (),
        clock: Optional[Clock] = None
    ):
        """
        Initialize the lookup table manager.

        Args:
            rpc: Ledger RPC capability
            executor: Transaction executor for lifecycle transactions
            store: Run state store holding table records
            sdk: Instruction SDK providing the program accounts
            config: Run configuration
            tip_accounts: Relay tip accounts registered on mainnet
            clock: Clock used for activation delays
        """
        self.rpc = rpc
        self.executor = executor
        self.store = store
        self.sdk = sdk
        self.config = config
        self.tip_accounts = list(tip_accounts)
        self.clock = clock or SYSTEM_CLOCK

    def collect_addresses(self, mint: Pubkey, creator: Pubkey, participants: Sequence[Pubkey]) -> AddressSet:
        """
        Every account the create and buy transactions of a bundle reference.

        Args:
            mint: Token mint
            creator: Token creator (the payer for launches)
            participants: Buyer wallets

        Returns:
            Deduplicated, insertion-ordered AddressSet
        """
        token_program = self.sdk.token_program_id
        addresses = AddressSet([creator, mint])
        addresses.extend(self.sdk.program_accounts(mint, creator))
        addresses.extend([SYSTEM_PROGRAM_ID, token_program, ASSOCIATED_TOKEN_PROGRAM_ID])

        for wallet in participants:
            addresses.add(wallet)
            addresses.add(get_associated_token_address(wallet, mint, token_program))
            addresses.extend(self.sdk.participant_accounts(mint, wallet))

        if self.config.is_mainnet:
            addresses.extend(Pubkey.from_string(a) for a in self.tip_accounts)

        logger.debug(f"Collected {len(addresses)} lookup table addresses for {mint}")
        return addresses

    async def ensure_table(
        self,
        mint: Pubkey,
        authority: Keypair,
        participants: Sequence[Pubkey],
        creator: Optional[Pubkey] = None
    ) -> str:
        """
        Return a usable lookup table bound to `mint`.

        A persisted table is reused only when it is bound to the same mint,
        still resolves on-chain and is not deactivated. A reused table is
        extended with any address it lacks. Otherwise a new table is created
        and filled.

        Args:
            mint: Token mint the table is for
            authority: Table authority and payer
            participants: Buyer wallets
            creator: Token creator, defaults to the authority

        Returns:
            Table address
        """
        mint_key = str(mint)
        creator = creator or authority.pubkey()
        addresses = self.collect_addresses(mint, creator, participants)
        if len(addresses) > LOOKUP_TABLE_MAX_ADDRESSES:
            raise BundlerConfigError(
                f"Bundle needs {len(addresses)} table addresses, a lookup table holds {LOOKUP_TABLE_MAX_ADDRESSES}"
            )

        run = self.store.get(mint_key) or RunRecord(mint=mint_key)
        record = run.lookup_table

        if record is not None and not record.is_bound_to(mint_key):
            logger.warning(f"Stored lookup table {record.address} is bound to {record.bound_mint}, not reusing")
            record = None

        if record is not None:
            info = await self.verify(record.address)
            if info is not None and info.is_active:
                missing = addresses.missing_from(info.addresses)
                if len(info.addresses) + len(missing) > LOOKUP_TABLE_MAX_ADDRESSES:
                    logger.warning(f"Lookup table {record.address} is too full to extend, creating a new one")
                else:
                    if missing:
                        logger.info(f"Extending reused lookup table {record.address} with {len(missing)} addresses")
                        await self.extend(record.address, authority, missing)
                    else:
                        logger.info(f"Reusing lookup table {record.address}")
                    record.transition(TableState.ACTIVE)
                    record.address_count = len(info.addresses) + len(missing)
                    run.lookup_table = record
                    self.store.put(mint_key, run)
                    return record.address
            else:
                logger.warning(f"Stored lookup table {record.address} is missing or deactivated, creating a new one")

        address = await self.create(authority, mint)
        await self.extend(address, authority, addresses.as_list())

        run = self.store.get(mint_key) or RunRecord(mint=mint_key)
        run.lookup_table.transition(TableState.ACTIVE)
        run.lookup_table.address_count = len(addresses)
        self.store.put(mint_key, run)
        return address

    async def create(self, authority: Keypair, mint: Pubkey) -> str:
        """
        Create a lookup table bound to `mint` and wait for it to activate.

        The record is persisted as pending right after the create confirms.

        Returns:
            Table address
        """
        slot = await self.rpc.get_slot()
        ix, table = create_lookup_table_instruction(authority.pubkey(), authority.pubkey(), slot)
        await self.executor.execute([ix], authority, label="create lookup table")

        address = str(table)
        mint_key = str(mint)
        run = self.store.get(mint_key) or RunRecord(mint=mint_key)
        run.lookup_table = LookupTableRecord(address=address, bound_mint=mint_key, creation_slot=slot)
        self.store.put(mint_key, run)

        logger.info(
            f"Created lookup table {address}, waiting {self.config.lut_activation_delay_seconds:.0f}s for activation",
            extra={"lookup_table": address, "mint": mint_key, "slot": slot}
        )
        await self.clock.sleep(self.config.lut_activation_delay_seconds)
        return address

    async def extend(self, table_address: str, authority: Keypair, addresses: Sequence[Pubkey]) -> int:
        """
        Append addresses in chunks, one confirmed transaction per chunk.

        Waits the activation delay after the last chunk.

        Returns:
            Number of extend transactions sent
        """
        if not addresses:
            return 0

        table = Pubkey.from_string(table_address)
        size = self.config.lut_extend_chunk_size
        chunks = [list(addresses[i:i + size]) for i in range(0, len(addresses), size)]

        for index, chunk in enumerate(chunks):
            ix = extend_lookup_table_instruction(table, authority.pubkey(), authority.pubkey(), chunk)
            await self.executor.execute([ix], authority, label=f"extend lookup table {index + 1}/{len(chunks)}")
            logger.info(
                f"Extended lookup table {table_address} with chunk {index + 1}/{len(chunks)} ({len(chunk)} addresses)"
            )
            if index < len(chunks) - 1:
                await self.clock.sleep(self.config.lut_extend_pause_seconds)

        await self.clock.sleep(self.config.lut_activation_delay_seconds)
        return len(chunks)

    async def verify(self, table_address: str) -> Optional[LookupTableAccountInfo]:
        """
        Fetch and decode a lookup table.

        Returns:
            The decoded table, or None if the account does not resolve
        """
        data = await self.rpc.get_account_data(Pubkey.from_string(table_address))
        if data is None:
            logger.warning(f"Lookup table {table_address} not found")
            return None
        info = decode_lookup_table_account(table_address, data)
        logger.debug(f"Lookup table {table_address}: {len(info.addresses)} addresses, active={info.is_active}")
        return info

    async def load_table(self, table_address: str) -> LookupTableAccountInfo:
        """
        Like verify(), but raises when the table does not resolve.

        Raises:
            LookupTableNotFoundError: If the account does not exist
        """
        info = await self.verify(table_address)
        if info is None:
            raise LookupTableNotFoundError(f"Lookup table {table_address} does not resolve")
        return info

    def _update_record(self, table_address: str, state: TableState,
                       deactivation_slot: Optional[int] = None) -> None:
        run = self.store.find_by_table(table_address)
        if run is None:
            return
        run.lookup_table.transition(state)
        if deactivation_slot is not None:
            run.lookup_table.deactivation_slot = deactivation_slot
        self.store.put(run.mint, run)

    async def deactivate(self, table_address: str, authority: Keypair) -> Optional[str]:
        """
        Deactivate a table so it can be closed after the cooldown.

        A table that is already deactivated is left alone.

        Returns:
            Signature of the deactivate transaction, or None if nothing was sent

        Raises:
            LookupTableNotFoundError: If the table does not resolve
        """
        info = await self.load_table(table_address)
        if not info.is_active:
            logger.info(f"Lookup table {table_address} already deactivated at slot {info.deactivation_slot}")
            self._update_record(table_address, TableState.DEACTIVATING, info.deactivation_slot)
            return None

        ix = deactivate_lookup_table_instruction(Pubkey.from_string(table_address), authority.pubkey())
        signature = await self.executor.execute([ix], authority, label="deactivate lookup table")
        self._update_record(table_address, TableState.DEACTIVATING, await self.rpc.get_slot())
        logger.info(f"Deactivated lookup table {table_address}, close after cooldown")
        return signature

    async def close(self, table_address: str, authority: Keypair, recipient: Pubkey) -> str:
        """
        Close a deactivated table and return its rent to `recipient`.

        Returns:
            Signature of the close transaction

        Raises:
            LookupTableNotFoundError: If the table does not resolve
            LookupTableStateError: If the table was never deactivated
            LookupTableCooldownError: If the cooldown has not elapsed yet
        """
        info = await self.load_table(table_address)
        if info.is_active:
            raise LookupTableStateError(f"Lookup table {table_address} must be deactivated before closing")
        self._update_record(table_address, TableState.DEACTIVATING, info.deactivation_slot)

        slot = await self.rpc.get_slot()
        elapsed = slot - info.deactivation_slot
        if elapsed <= self.config.lut_cooldown_slots:
            raise LookupTableCooldownError(
                f"Lookup table {table_address} deactivated {elapsed} slots ago, "
                f"cooldown is {self.config.lut_cooldown_slots} slots"
            )

        ix = close_lookup_table_instruction(Pubkey.from_string(table_address), authority.pubkey(), recipient)
        try:
            signature = await self.executor.execute([ix], authority, label="close lookup table")
        except (TransactionSendError, ConfirmationError) as e:
            if _is_cooldown_error(str(e)):
                raise LookupTableCooldownError(f"Lookup table {table_address} still in cooldown: {e}") from e
            raise

        self._update_record(table_address, TableState.CLOSED)
        logger.info(f"Closed lookup table {table_address}, rent returned to {recipient}")
        return signature
