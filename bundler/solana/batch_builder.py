"""
Transaction batch building.

Packs instruction groups into as few v0 transactions as fit the ledger's
size limit, compiled against the bundle's lookup table, each carrying the
compute budget and exactly the signers its groups need.
"""

from typing import Dict, List, Optional, Sequence

from loguru import logger
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from bundler.config import BundlerConfig
from bundler.solana.errors import BatchSizeError, BundlerConfigError
from bundler.solana.models import InstructionGroup, LookupTableAccountInfo, TransactionBatch
from bundler.solana.token_program import compute_budget_instructions, transfer_instruction
from bundler.solana.tx_executor import compile_message, serialized_size, sign_message


def _unique_signers(payer: Keypair, extra: Sequence[Keypair]) -> List[Keypair]:
    """Payer first, then each distinct extra signer in order."""
    signers: Dict[str, Keypair] = {str(payer.pubkey()): payer}
    for keypair in extra:
        signers.setdefault(str(keypair.pubkey()), keypair)
    return list(signers.values())


class TransactionBatchBuilder:
    """
    Builds the signed transactions of a bundle.
    """

    def __init__(self, config: BundlerConfig):
        """
        Initialize the batch builder.

        Args:
            config: Run configuration (size limit, groups per transaction, compute budget)
        """
        self.config = config

    def compute_budget(self) -> List[Instruction]:
        return compute_budget_instructions(self.config.compute_unit_limit, self.config.compute_unit_price)

    def _make_batch(
        self,
        index: int,
        groups: Sequence[InstructionGroup],
        payer: Keypair,
        blockhash: Hash,
        lookup_tables: List[AddressLookupTableAccount],
        table_address: Optional[str]
    ) -> TransactionBatch:
        instructions = self.compute_budget()
        extra_signers = []
        for group in groups:
            instructions.extend(group.instructions)
            extra_signers.extend(group.signers)

        message = compile_message(instructions, payer, blockhash, lookup_tables)
        return TransactionBatch(
            index=index,
            labels=[group.label for group in groups],
            instructions=instructions,
            payer=payer,
            signers=_unique_signers(payer, extra_signers),
            blockhash=blockhash,
            lookup_tables=lookup_tables,
            lookup_table_address=table_address,
            size_bytes=serialized_size(message),
        )

    def pack(
        self,
        groups: Sequence[InstructionGroup],
        payer: Keypair,
        blockhash: Hash,
        table: Optional[LookupTableAccountInfo] = None,
        pool_size: Optional[int] = None,
        start_index: int = 0,
        max_groups: Optional[int] = None
    ) -> List[TransactionBatch]:
        """
        Pack instruction groups into transactions.

        Groups are taken in order and added to the current transaction
        while it stays within WALLETS_PER_TX groups and MAX_TX_BYTES once
        compiled against the lookup table.

        Args:
            groups: Instruction groups in bundle order
            payer: Fee payer signing every batch
            blockhash: Recent blockhash for the batches
            table: Lookup table to compile against
            pool_size: Wallet pool size, the limit on distinct group signers
            start_index: Index of the first produced batch within the bundle
            max_groups: Groups per transaction, defaults to WALLETS_PER_TX

        Returns:
            The batches, in order

        Raises:
            BundlerConfigError: More distinct signers than the pool holds
            BatchSizeError: A single group does not fit one transaction
        """
        if pool_size is not None:
            payer_key = str(payer.pubkey())
            distinct = {str(k) for group in groups for k in group.signer_keys if str(k) != payer_key}
            if len(distinct) > pool_size:
                raise BundlerConfigError(
                    f"{len(distinct)} signer wallets requested but the wallet pool holds {pool_size}"
                )

        lookup_tables = [table.to_account()] if table else []
        table_address = table.address if table else None
        max_groups = max_groups or self.config.wallets_per_tx
        max_bytes = self.config.max_tx_bytes

        batches: List[TransactionBatch] = []
        current: List[InstructionGroup] = []
        current_batch: Optional[TransactionBatch] = None

        for group in groups:
            candidate = current + [group]
            if len(candidate) <= max_groups:
                batch = self._make_batch(
                    start_index + len(batches), candidate, payer, blockhash, lookup_tables, table_address
                )
                if batch.size_bytes <= max_bytes:
                    current, current_batch = candidate, batch
                    continue

            if not current:
                raise BatchSizeError(
                    f"Instruction group '{group.label}' does not fit in one transaction "
                    f"({max_bytes} bytes)"
                )

            batches.append(current_batch)
            current = [group]
            current_batch = self._make_batch(
                start_index + len(batches), current, payer, blockhash, lookup_tables, table_address
            )
            if current_batch.size_bytes > max_bytes:
                raise BatchSizeError(
                    f"Instruction group '{group.label}' needs {current_batch.size_bytes} bytes, "
                    f"limit is {max_bytes}"
                )

        if current_batch is not None:
            batches.append(current_batch)

        for batch in batches:
            logger.debug(
                f"Batch {batch.index + 1}: {batch.group_count} groups, {batch.size_bytes} bytes, "
                f"{len(batch.signers)} signers",
                extra={"index": batch.index, "size_bytes": batch.size_bytes}
            )
        logger.info(f"Packed {len(groups)} instruction groups into {len(batches)} transactions")
        return batches

    def build_single(
        self,
        instructions: Sequence[Instruction],
        payer: Keypair,
        signers: Sequence[Keypair],
        blockhash: Hash,
        table: Optional[LookupTableAccountInfo] = None,
        index: int = 0,
        label: str = "transaction"
    ) -> TransactionBatch:
        """
        Build one batch from a fixed instruction list.

        Raises:
            BatchSizeError: If the transaction exceeds MAX_TX_BYTES
        """
        group = InstructionGroup(label=label, instructions=list(instructions), signers=list(signers))
        lookup_tables = [table.to_account()] if table else []
        batch = self._make_batch(index, [group], payer, blockhash, lookup_tables, table.address if table else None)
        if batch.size_bytes > self.config.max_tx_bytes:
            raise BatchSizeError(f"'{label}' needs {batch.size_bytes} bytes, limit is {self.config.max_tx_bytes}")
        return batch

    def build_tip_batch(
        self,
        payer: Keypair,
        tip_account: Pubkey,
        lamports: int,
        blockhash: Hash,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
        index: int = 0
    ) -> TransactionBatch:
        """Relay tip transaction: payer pays `lamports` to the tip account."""
        group = InstructionGroup(
            label="relay tip",
            instructions=[transfer_instruction(payer.pubkey(), tip_account, lamports)],
        )
        table_address = str(lookup_tables[0].key) if lookup_tables else None
        return self._make_batch(index, [group], payer, blockhash, list(lookup_tables), table_address)

    def sign(self, batch: TransactionBatch) -> VersionedTransaction:
        """Compile and sign a batch against its blockhash."""
        message = compile_message(batch.instructions, batch.payer, batch.blockhash, batch.lookup_tables)
        return sign_message(message, batch.signers)
