"""
Transaction execution for Solana.

Compiles v0 messages (optionally against lookup tables), signs them with
exactly the signers the message requires, sends them and waits for
confirmation.
"""

from typing import Dict, List, Optional, Sequence

from loguru import logger
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.transaction import VersionedTransaction

from bundler.config import BundlerConfig
from bundler.solana.clock import Clock, SYSTEM_CLOCK
from bundler.solana.confirmation import SignatureConfirmer
from bundler.solana.errors import BundlerConfigError, TransactionSendError
from bundler.solana.rpc import LedgerRpc
from bundler.solana.token_program import compute_budget_instructions


def is_blockhash_not_found(message: str) -> bool:
    lowered = message.lower()
    return "blockhash not found" in lowered or "blockhashnotfound" in lowered


def compile_message(
    instructions: Sequence[Instruction],
    payer: Keypair,
    blockhash: Hash,
    lookup_tables: Sequence[AddressLookupTableAccount] = ()
) -> MessageV0:
    return MessageV0.try_compile(payer.pubkey(), list(instructions), list(lookup_tables), blockhash)


def serialized_size(message: MessageV0) -> int:
    """Wire size of the signed transaction carrying this message."""
    num_signers = message.header.num_required_signatures
    return 1 + 64 * num_signers + len(to_bytes_versioned(message))


def sign_message(message: MessageV0, signers: Sequence[Keypair]) -> VersionedTransaction:
    """
    Sign a message with the keypairs it requires.

    Extra keypairs are ignored and duplicates collapse, so callers can pass
    a generous signer list.

    Raises:
        BundlerConfigError: If a required signer is missing
    """
    by_key: Dict[str, Keypair] = {str(kp.pubkey()): kp for kp in signers}
    required = message.account_keys[:message.header.num_required_signatures]
    keypairs: List[Keypair] = []
    for key in required:
        keypair = by_key.get(str(key))
        if keypair is None:
            raise BundlerConfigError(f"Missing signer {key} for transaction")
        keypairs.append(keypair)
    return VersionedTransaction(message, keypairs)


def build_transaction(
    instructions: Sequence[Instruction],
    payer: Keypair,
    signers: Sequence[Keypair],
    blockhash: Hash,
    lookup_tables: Sequence[AddressLookupTableAccount] = ()
) -> VersionedTransaction:
    message = compile_message(instructions, payer, blockhash, lookup_tables)
    return sign_message(message, [payer, *signers])


class TxExecutor:
    """
    Sends single transactions and waits for their confirmation.
    """

    def __init__(self, rpc: LedgerRpc, config: BundlerConfig, clock: Optional[Clock] = None,
                 confirmer: Optional[SignatureConfirmer] = None):
        """
        Initialize the transaction executor.

        Args:
            rpc: Ledger RPC capability
            config: Run configuration
            clock: Clock shared with the confirmation poller
            confirmer: Pre-built confirmer, defaults to one using the configured timeout
        """
        self.rpc = rpc
        self.config = config
        self.clock = clock or SYSTEM_CLOCK
        self.confirmer = confirmer or SignatureConfirmer(
            rpc,
            timeout_seconds=config.confirmation_timeout_seconds,
            poll_interval_seconds=config.confirmation_poll_seconds,
            clock=self.clock,
        )

    def admin_budget(self) -> List[Instruction]:
        return compute_budget_instructions(
            self.config.admin_compute_unit_limit,
            self.config.admin_compute_unit_price
        )

    async def execute(
        self,
        instructions: Sequence[Instruction],
        payer: Keypair,
        signers: Sequence[Keypair] = (),
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
        label: str = "transaction",
        skip_preflight: bool = False,
        with_compute_budget: bool = True
    ) -> str:
        """
        Build, sign, send and confirm one transaction.

        A send rejected for an unknown blockhash is rebuilt once against a
        fresh blockhash.

        Args:
            instructions: Instructions to execute
            payer: Fee payer (always a signer)
            signers: Additional signers
            lookup_tables: Lookup tables to compile against
            label: Name for logs
            skip_preflight: Skip the node's preflight simulation
            with_compute_budget: Prepend the admin compute budget instructions

        Returns:
            Confirmed transaction signature

        Raises:
            TransactionSendError: The node rejected the transaction
            ConfirmationError: The transaction failed or timed out
        """
        ixs = list(instructions)
        if with_compute_budget:
            ixs = self.admin_budget() + ixs

        signature = None
        for attempt in range(2):
            blockhash = await self.rpc.get_latest_blockhash()
            tx = build_transaction(ixs, payer, signers, blockhash.blockhash, lookup_tables)
            try:
                signature = await self.rpc.send_transaction(tx, skip_preflight=skip_preflight)
                break
            except TransactionSendError as e:
                if attempt == 0 and is_blockhash_not_found(str(e)):
                    logger.warning(f"{label}: blockhash expired before send, rebuilding")
                    continue
                logger.error(f"{label}: send rejected: {e}", extra={"logs": e.logs[-10:]})
                raise

        logger.info(f"{label}: sent {signature}", extra={"signature": signature, "label": label})
        return await self.confirmer.wait_or_raise(signature)
