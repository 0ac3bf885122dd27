"""
Shared fakes for the bundler tests.

FakeLedger applies the instructions the bundler builds itself (system
transfers, lookup table lifecycle, token account closes) to in-memory
balances and tables, so flows can be exercised end to end without a node.
"""

import asyncio
import random
from typing import Dict, List, Optional, Set, Tuple

import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import VersionedTransaction

from bundler.config import LAMPORTS_PER_SOL, BundlerConfig
from bundler.solana.errors import TransactionSendError
from bundler.solana.lookup_table_program import (
    CLOSE_LOOKUP_TABLE,
    CREATE_LOOKUP_TABLE,
    DEACTIVATE_LOOKUP_TABLE,
    EXTEND_LOOKUP_TABLE,
    LOOKUP_TABLE_PROGRAM_ID,
    decode_lookup_table_account,
    encode_lookup_table_account,
)
from bundler.solana.models import (
    BlockhashInfo,
    LookupTableAccountInfo,
    RelayStatus,
    RelaySubmission,
    SignatureStatus,
    SimulationResult,
    TokenAccountInfo,
)
from bundler.solana.relays import JITO_TIP_ACCOUNTS
from bundler.solana.token_program import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    CLOSE_ACCOUNT_INSTRUCTION,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    get_associated_token_address,
)
from bundler.solana.tx_executor import TxExecutor
from bundler.solana.wallet_pool import WalletPool
from bundler.state.run_state import InMemoryRunStateStore
from bundler.utils.wallet_storage import encode_keypair

SIGNATURE_FEE = 5000
LOOKUP_TABLE_COOLDOWN = 513
SYSTEM_TRANSFER = 2


def _u32(data: bytes, offset: int = 0) -> int:
    return int.from_bytes(data[offset:offset + 4], byteorder="little")


def _u64(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset:offset + 8], byteorder="little")


class FakeClock:
    """Virtual time: sleep advances the clock instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.now += seconds
        await asyncio.sleep(0)


class FakeLedger:
    """In-memory LedgerRpc."""

    def __init__(self, slot: int = 1000):
        self.slot = slot
        self.balances: Dict[str, int] = {}
        self.tables: Dict[str, bytes] = {}
        self.accounts: Dict[str, bytes] = {}
        self.token_accounts: Dict[Tuple[str, str], List[TokenAccountInfo]] = {}
        self.statuses: Dict[str, SignatureStatus] = {}
        self.sent: List[VersionedTransaction] = []
        self.simulated: List[VersionedTransaction] = []
        self.send_errors: List[Exception] = []
        self.never_land: Set[int] = set()
        self.fail_sends: Dict[int, str] = {}
        self.simulation = SimulationResult(logs=["Program log: ok"], units_consumed=1200)
        self.fees_paid = 0

    def fund(self, pubkey: Pubkey, lamports: int) -> None:
        self.balances[str(pubkey)] = self.balances.get(str(pubkey), 0) + lamports

    def put_table(self, info: LookupTableAccountInfo) -> None:
        self.tables[info.address] = encode_lookup_table_account(info)

    def table(self, address: str) -> Optional[LookupTableAccountInfo]:
        data = self.tables.get(address)
        return decode_lookup_table_account(address, data) if data is not None else None

    async def get_latest_blockhash(self) -> BlockhashInfo:
        return BlockhashInfo(blockhash=Hash.new_unique(), last_valid_block_height=self.slot + 150)

    async def get_slot(self) -> int:
        return self.slot

    async def get_balance(self, pubkey: Pubkey) -> int:
        return self.balances.get(str(pubkey), 0)

    async def get_account_data(self, pubkey: Pubkey) -> Optional[bytes]:
        key = str(pubkey)
        return self.tables.get(key, self.accounts.get(key))

    async def get_token_accounts(self, owner: Pubkey, program_id: Pubkey) -> List[TokenAccountInfo]:
        return list(self.token_accounts.get((str(owner), str(program_id)), []))

    async def simulate_transaction(self, tx: VersionedTransaction) -> SimulationResult:
        self.simulated.append(tx)
        return self.simulation

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        return self.statuses.get(signature)

    async def send_transaction(self, tx: VersionedTransaction, skip_preflight: bool = False) -> str:
        if self.send_errors:
            raise self.send_errors.pop(0)

        position = len(self.sent)
        self.sent.append(tx)
        signature = str(tx.signatures[0])
        self.slot += 1

        if position in self.never_land:
            return signature
        if position in self.fail_sends:
            self.statuses[signature] = SignatureStatus(
                signature=signature, confirmation_status="confirmed", err=self.fail_sends[position]
            )
            return signature

        self._apply(tx)
        self.statuses[signature] = SignatureStatus(signature=signature, confirmation_status="confirmed")
        return signature

    def _resolve_accounts(self, message) -> List[Pubkey]:
        keys = list(message.account_keys)
        writable, readonly = [], []
        for lookup in message.address_table_lookups:
            info = self.table(str(lookup.account_key))
            if info is None:
                raise TransactionSendError(f"Lookup table {lookup.account_key} not found")
            writable.extend(Pubkey.from_string(info.addresses[i]) for i in lookup.writable_indexes)
            readonly.extend(Pubkey.from_string(info.addresses[i]) for i in lookup.readonly_indexes)
        return keys + writable + readonly

    def _debit(self, pubkey: Pubkey, lamports: int) -> None:
        balance = self.balances.get(str(pubkey), 0)
        if balance < lamports:
            raise TransactionSendError(
                f"Transaction simulation failed: insufficient funds for {pubkey}",
                ["Program log: insufficient lamports"]
            )
        self.balances[str(pubkey)] = balance - lamports

    def _apply(self, tx: VersionedTransaction) -> None:
        message = tx.message
        accounts = self._resolve_accounts(message)
        fee = SIGNATURE_FEE * message.header.num_required_signatures
        self._debit(accounts[0], fee)
        self.fees_paid += fee

        for compiled in message.instructions:
            program = accounts[compiled.program_id_index]
            ix_accounts = [accounts[i] for i in compiled.accounts]
            data = bytes(compiled.data)
            if program == SYSTEM_PROGRAM_ID and _u32(data) == SYSTEM_TRANSFER:
                lamports = _u64(data, 4)
                self._debit(ix_accounts[0], lamports)
                self.fund(ix_accounts[1], lamports)
            elif program == LOOKUP_TABLE_PROGRAM_ID:
                self._apply_lookup_table(_u32(data), data, ix_accounts)
            elif program in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID) and data[:1] == bytes([CLOSE_ACCOUNT_INSTRUCTION]):
                self._close_token_account(ix_accounts[0], ix_accounts[1], ix_accounts[2], program)
            elif program == ASSOCIATED_TOKEN_PROGRAM_ID:
                self.accounts.setdefault(str(ix_accounts[1]), bytes(165))

    def _apply_lookup_table(self, discriminator: int, data: bytes, accounts: List[Pubkey]) -> None:
        address = str(accounts[0])
        if discriminator == CREATE_LOOKUP_TABLE:
            self.put_table(LookupTableAccountInfo(address=address, authority=str(accounts[1])))
            return

        info = self.table(address)
        if info is None:
            raise TransactionSendError(f"Lookup table {address} does not exist")
        if discriminator == EXTEND_LOOKUP_TABLE:
            count = _u64(data, 4)
            new = [str(Pubkey.from_bytes(data[12 + 32 * i:44 + 32 * i])) for i in range(count)]
            info.addresses.extend(new)
            info.last_extended_slot = self.slot
            self.put_table(info)
        elif discriminator == DEACTIVATE_LOOKUP_TABLE:
            info.deactivation_slot = self.slot
            self.put_table(info)
        elif discriminator == CLOSE_LOOKUP_TABLE:
            if info.is_active or self.slot - info.deactivation_slot <= LOOKUP_TABLE_COOLDOWN:
                raise TransactionSendError("Program log: Table cannot be closed, not deactivated yet")
            del self.tables[address]

    def _close_token_account(self, account: Pubkey, destination: Pubkey, owner: Pubkey, program: Pubkey) -> None:
        key = (str(owner), str(program))
        remaining = []
        for token_account in self.token_accounts.get(key, []):
            if token_account.address == str(account):
                self.fund(destination, token_account.lamports)
            else:
                remaining.append(token_account)
        self.token_accounts[key] = remaining


class FakeSdk:
    """Instruction SDK for a made-up launchpad program."""

    def __init__(self):
        self.program_id = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")
        self.global_state = Pubkey.from_string("4wTV1YmiEkRvAtNtsSGPtUrqRYQMe5SKy2uB4Jjaxnjf")
        self.fee_recipient = Pubkey.from_string("CebN5WGQ4jvEPvsVU4EoHEpgzq1VV7AbicfhtW4xC9iM")
        self.existing: Set[str] = set()
        self.creators: Dict[str, Pubkey] = {}
        self.buys: List[Tuple[str, int]] = []

    @property
    def token_program_id(self) -> Pubkey:
        return TOKEN_2022_PROGRAM_ID

    def bonding_curve(self, mint: Pubkey) -> Pubkey:
        address, _ = Pubkey.find_program_address([b"bonding-curve", bytes(mint)], self.program_id)
        return address

    def volume_accumulator(self, wallet: Pubkey) -> Pubkey:
        address, _ = Pubkey.find_program_address([b"user_volume_accumulator", bytes(wallet)], self.program_id)
        return address

    def program_accounts(self, mint: Pubkey, creator: Pubkey) -> List[Pubkey]:
        curve = self.bonding_curve(mint)
        return [
            self.program_id,
            self.global_state,
            self.fee_recipient,
            curve,
            get_associated_token_address(curve, mint, TOKEN_2022_PROGRAM_ID),
        ]

    def participant_accounts(self, mint: Pubkey, wallet: Pubkey) -> List[Pubkey]:
        return [self.volume_accumulator(wallet)]

    async def token_exists(self, mint: Pubkey) -> bool:
        return str(mint) in self.existing

    async def fetch_creator(self, mint: Pubkey) -> Pubkey:
        return self.creators[str(mint)]

    async def build_create_instructions(self, mint: Pubkey, creator: Pubkey) -> List[Instruction]:
        return [Instruction(
            program_id=self.program_id,
            data=b"create",
            accounts=[
                AccountMeta(pubkey=mint, is_signer=True, is_writable=True),
                AccountMeta(pubkey=creator, is_signer=True, is_writable=True),
                AccountMeta(pubkey=self.bonding_curve(mint), is_signer=False, is_writable=True),
                AccountMeta(pubkey=self.global_state, is_signer=False, is_writable=False),
            ],
        )]

    async def build_buy_instructions(self, mint: Pubkey, creator: Pubkey, buyer: Pubkey,
                                     sol_lamports: int) -> List[Instruction]:
        self.buys.append((str(buyer), sol_lamports))
        curve = self.bonding_curve(mint)
        return [Instruction(
            program_id=self.program_id,
            data=b"buy" + sol_lamports.to_bytes(8, byteorder="little"),
            accounts=[
                AccountMeta(pubkey=buyer, is_signer=True, is_writable=True),
                AccountMeta(pubkey=get_associated_token_address(buyer, mint), is_signer=False, is_writable=True),
                AccountMeta(pubkey=curve, is_signer=False, is_writable=True),
                AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
                AccountMeta(pubkey=self.fee_recipient, is_signer=False, is_writable=True),
                AccountMeta(pubkey=self.volume_accumulator(buyer), is_signer=False, is_writable=True),
            ],
        )]


class ScriptedRelay:
    """Relay that returns scripted statuses (or raises scripted errors) and records submissions."""

    name = "scripted"
    tip_accounts = JITO_TIP_ACCOUNTS
    max_bundle_size = 5

    def __init__(self, statuses: Optional[List[RelayStatus]] = None, supports_status: bool = True,
                 submit_error: Optional[Exception] = None):
        self.statuses = list(statuses or [RelayStatus.CONFIRMED])
        self.supports_status = supports_status
        self.submit_error = submit_error
        self.submitted: List[List[VersionedTransaction]] = []
        self.status_calls = 0

    async def submit(self, transactions) -> RelaySubmission:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(list(transactions))
        return RelaySubmission(accepted=True, bundle_id=f"bundle-{len(self.submitted)}")

    async def get_status(self, bundle_id: str) -> RelayStatus:
        self.status_calls += 1
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(status, Exception):
            raise status
        return status

    def pick_tip_account(self, rng=None) -> Pubkey:
        return Pubkey.from_string(self.tip_accounts[0])


def make_keypairs(count: int, offset: int = 1) -> List[Keypair]:
    return [Keypair.from_seed(bytes([offset + i] * 32)) for i in range(count)]


@pytest.fixture
def payer() -> Keypair:
    return Keypair.from_seed(bytes([200] * 32))


@pytest.fixture
def participants() -> List[Keypair]:
    return make_keypairs(6)


@pytest.fixture
def config(payer, tmp_path) -> BundlerConfig:
    return BundlerConfig(
        cluster="devnet",
        main_wallet_private_key=encode_keypair(payer),
        bundle_wallet_count=6,
        wallets_per_tx=3,
        lut_extend_chunk_size=5,
        lut_activation_delay_seconds=20.0,
        lut_extend_pause_seconds=2.0,
        confirmation_timeout_seconds=10.0,
        confirmation_poll_seconds=1.0,
        bundle_confirmation_timeout_seconds=10.0,
        inter_tx_delay_seconds=0.5,
        rate_limit_max_retries=3,
        rate_limit_initial_backoff=1.0,
        rate_limit_max_backoff=8.0,
        relay_poll_seconds=2.0,
        relay_max_polls=5,
        state_file=str(tmp_path / "data.json"),
        wallets_dir=str(tmp_path / "wallets"),
    )


@pytest.fixture
def mainnet_config(config) -> BundlerConfig:
    return config.model_copy(update={"cluster": "mainnet"})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(payer) -> FakeLedger:
    ledger = FakeLedger()
    ledger.fund(payer.pubkey(), 10 * LAMPORTS_PER_SOL)
    return ledger


@pytest.fixture
def sdk() -> FakeSdk:
    return FakeSdk()


@pytest.fixture
def store() -> InMemoryRunStateStore:
    return InMemoryRunStateStore()


@pytest.fixture
def executor(ledger, config, clock) -> TxExecutor:
    return TxExecutor(ledger, config, clock)


@pytest.fixture
def wallet_pool(payer, participants, ledger, executor, config) -> WalletPool:
    return WalletPool(payer, participants, ledger, executor, config, rng=random.Random(7))
