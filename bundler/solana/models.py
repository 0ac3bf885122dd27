"""
Models for bundle building and submission.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from bundler.solana.errors import LookupTableStateError

# u64::MAX marks a lookup table that was never deactivated
ACTIVE_DEACTIVATION_SLOT = 2 ** 64 - 1


class WalletRole(str, Enum):
    PAYER = "payer"
    PARTICIPANT = "participant"


class ManagedWallet(BaseModel):
    """A signer wallet held by the wallet pool."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    keypair: Keypair
    role: WalletRole = WalletRole.PARTICIPANT

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())


class TableState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DEACTIVATING = "deactivating"
    CLOSED = "closed"


# Allowed lookup table state transitions
_TABLE_TRANSITIONS = {
    TableState.PENDING: {TableState.ACTIVE, TableState.DEACTIVATING},
    TableState.ACTIVE: {TableState.DEACTIVATING},
    TableState.DEACTIVATING: {TableState.CLOSED},
    TableState.CLOSED: set(),
}


class LookupTableRecord(BaseModel):
    """Identity and lifecycle state of a lookup table bound to one mint."""
    address: str
    bound_mint: str
    creation_slot: int
    state: TableState = TableState.PENDING
    address_count: int = 0
    deactivation_slot: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.now)

    def is_bound_to(self, mint: str) -> bool:
        return self.bound_mint == mint

    def transition(self, new_state: TableState) -> "LookupTableRecord":
        """
        Move the record to a new lifecycle state.

        Args:
            new_state: Target state

        Returns:
            The same record, updated in place

        Raises:
            LookupTableStateError: If the transition is not allowed
        """
        if new_state == self.state:
            return self
        if new_state not in _TABLE_TRANSITIONS[self.state]:
            raise LookupTableStateError(
                f"Lookup table {self.address} cannot go from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        return self


class LookupTableAccountInfo(BaseModel):
    """Decoded on-chain lookup table account."""
    address: str
    addresses: List[str] = Field(default_factory=list)
    deactivation_slot: int = ACTIVE_DEACTIVATION_SLOT
    last_extended_slot: int = 0
    authority: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.deactivation_slot == ACTIVE_DEACTIVATION_SLOT

    def to_account(self) -> AddressLookupTableAccount:
        """Build the solders account used when compiling v0 messages."""
        return AddressLookupTableAccount(
            Pubkey.from_string(self.address),
            [Pubkey.from_string(a) for a in self.addresses],
        )


class RunRecord(BaseModel):
    """Persisted run state for one mint."""
    mint: str
    lookup_table: Optional[LookupTableRecord] = None
    created: bool = False
    updated_at: datetime = Field(default_factory=datetime.now)


class InstructionGroup(BaseModel):
    """One unit of work packed as a whole, e.g. create-ATA plus buy for a wallet."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    label: str
    instructions: List[Instruction]
    signers: List[Keypair] = Field(default_factory=list)

    @property
    def signer_keys(self) -> List[Pubkey]:
        return [s.pubkey() for s in self.signers]


class TransactionBatch(BaseModel):
    """Instructions and signers for one transaction of a bundle."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    index: int
    labels: List[str] = Field(default_factory=list)
    instructions: List[Instruction]
    payer: Keypair
    signers: List[Keypair]
    blockhash: Hash
    lookup_tables: List[AddressLookupTableAccount] = Field(default_factory=list)
    lookup_table_address: Optional[str] = None
    size_bytes: int = 0

    @property
    def group_count(self) -> int:
        return len(self.labels)

    @property
    def signer_addresses(self) -> List[str]:
        return [str(s.pubkey()) for s in self.signers]

    def with_blockhash(self, blockhash: Hash) -> "TransactionBatch":
        return self.model_copy(update={"blockhash": blockhash})


class Bundle(BaseModel):
    """Ordered batches meant to land together."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    batches: List[TransactionBatch]
    payer: Keypair
    critical_index: int = 0
    lookup_table_address: Optional[str] = None


class SubmissionStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    ATOMIC = "atomic"


class SubmissionResult(BaseModel):
    """Outcome of a bundle submission."""
    confirmed: bool
    strategy: SubmissionStrategy
    signatures: List[str] = Field(default_factory=list)
    relay_bundle_id: Optional[str] = None
    failure_reason: Optional[str] = None
    failed_index: Optional[int] = None
    simulated: bool = False


class BlockhashInfo(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    blockhash: Hash
    last_valid_block_height: int = 0


class SignatureStatus(BaseModel):
    """Ledger status of a signature that was found."""
    signature: str
    confirmation_status: Optional[str] = None  # processed, confirmed, finalized
    err: Optional[Any] = None


class SimulationResult(BaseModel):
    err: Optional[Any] = None
    logs: List[str] = Field(default_factory=list)
    units_consumed: Optional[int] = None


class TokenAccountInfo(BaseModel):
    """Parsed token account owned by a wallet."""
    address: str
    mint: str
    program_id: str
    amount: int
    lamports: int = 0


class RelayStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    DROPPED = "dropped"


class RelaySubmission(BaseModel):
    accepted: bool
    bundle_id: Optional[str] = None
    message: Optional[str] = None


class DistributionResult(BaseModel):
    total_lamports: int = 0
    per_wallet_lamports: Dict[str, int] = Field(default_factory=dict)
    signatures: List[str] = Field(default_factory=list)


class GatherResult(BaseModel):
    gathered_lamports: int = 0
    tx_count: int = 0
    signatures: List[str] = Field(default_factory=list)


class CloseAccountsResult(BaseModel):
    closed: int = 0
    reclaimed_lamports: int = 0
    tx_count: int = 0
    skipped_non_zero: int = 0


class CloseTablesResult(BaseModel):
    deactivated: int = 0
    closed: int = 0
    retry_later: int = 0
    skipped: int = 0
