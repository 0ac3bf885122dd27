"""
Address lookup table program codec.

Builds the create, extend, deactivate and close instructions of the native
lookup table program and decodes its on-chain account layout.
"""

from typing import List, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from bundler.solana.errors import LookupTableError
from bundler.solana.models import LookupTableAccountInfo

LOOKUP_TABLE_PROGRAM_ID = Pubkey.from_string("AddressLookupTab1e1111111111111111111111111")

# Instruction discriminators (u32, little endian)
CREATE_LOOKUP_TABLE = 0
FREEZE_LOOKUP_TABLE = 1
EXTEND_LOOKUP_TABLE = 2
DEACTIVATE_LOOKUP_TABLE = 3
CLOSE_LOOKUP_TABLE = 4

# Account layout
LOOKUP_TABLE_META_SIZE = 56
LOOKUP_TABLE_MAX_ADDRESSES = 256
_DEACTIVATION_SLOT_OFFSET = 4
_LAST_EXTENDED_SLOT_OFFSET = 12
_AUTHORITY_TAG_OFFSET = 21
_AUTHORITY_OFFSET = 22


def _u32(value: int) -> bytes:
    return value.to_bytes(4, byteorder="little")


def _u64(value: int) -> bytes:
    return value.to_bytes(8, byteorder="little")


def derive_lookup_table_address(authority: Pubkey, recent_slot: int) -> Tuple[Pubkey, int]:
    """
    Derive the table address and bump seed for an authority and slot.

    Args:
        authority: Table authority
        recent_slot: Recent slot used as the derivation seed

    Returns:
        Tuple of (table address, bump seed)
    """
    return Pubkey.find_program_address(
        [bytes(authority), _u64(recent_slot)],
        LOOKUP_TABLE_PROGRAM_ID
    )


def create_lookup_table_instruction(
    authority: Pubkey,
    payer: Pubkey,
    recent_slot: int
) -> Tuple[Instruction, Pubkey]:
    """
    Create an instruction that allocates a new lookup table.

    Args:
        authority: Table authority
        payer: Account funding the table
        recent_slot: A slot the cluster still considers recent

    Returns:
        Tuple of (instruction, table address)
    """
    table, bump = derive_lookup_table_address(authority, recent_slot)
    keys = [
        AccountMeta(pubkey=table, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = _u32(CREATE_LOOKUP_TABLE) + _u64(recent_slot) + bytes([bump])
    return Instruction(program_id=LOOKUP_TABLE_PROGRAM_ID, data=data, accounts=keys), table


def extend_lookup_table_instruction(
    table: Pubkey,
    authority: Pubkey,
    payer: Pubkey,
    addresses: List[Pubkey]
) -> Instruction:
    """
    Create an instruction appending addresses to a lookup table.

    Args:
        table: Lookup table address
        authority: Table authority
        payer: Account funding the extra rent
        addresses: Addresses to append

    Returns:
        Instruction for the lookup table program
    """
    if not addresses:
        raise LookupTableError("Extend requires at least one address")
    keys = [
        AccountMeta(pubkey=table, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = _u32(EXTEND_LOOKUP_TABLE) + _u64(len(addresses)) + b"".join(bytes(a) for a in addresses)
    return Instruction(program_id=LOOKUP_TABLE_PROGRAM_ID, data=data, accounts=keys)


def deactivate_lookup_table_instruction(table: Pubkey, authority: Pubkey) -> Instruction:
    keys = [
        AccountMeta(pubkey=table, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]
    return Instruction(
        program_id=LOOKUP_TABLE_PROGRAM_ID,
        data=_u32(DEACTIVATE_LOOKUP_TABLE),
        accounts=keys
    )


def close_lookup_table_instruction(table: Pubkey, authority: Pubkey, recipient: Pubkey) -> Instruction:
    keys = [
        AccountMeta(pubkey=table, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
        AccountMeta(pubkey=recipient, is_signer=False, is_writable=True),
    ]
    return Instruction(
        program_id=LOOKUP_TABLE_PROGRAM_ID,
        data=_u32(CLOSE_LOOKUP_TABLE),
        accounts=keys
    )


def decode_lookup_table_account(address: str, data: bytes) -> LookupTableAccountInfo:
    """
    Decode raw lookup table account data.

    The account is a 56 byte metadata header followed by packed 32 byte
    addresses.

    Args:
        address: Table address
        data: Raw account data

    Returns:
        Decoded table information

    Raises:
        LookupTableError: If the data is not a lookup table account
    """
    if len(data) < LOOKUP_TABLE_META_SIZE:
        raise LookupTableError(f"Account {address} is too small to be a lookup table ({len(data)} bytes)")
    if (len(data) - LOOKUP_TABLE_META_SIZE) % 32 != 0:
        raise LookupTableError(f"Account {address} has a malformed address list")

    deactivation_slot = int.from_bytes(
        data[_DEACTIVATION_SLOT_OFFSET:_DEACTIVATION_SLOT_OFFSET + 8], byteorder="little"
    )
    last_extended_slot = int.from_bytes(
        data[_LAST_EXTENDED_SLOT_OFFSET:_LAST_EXTENDED_SLOT_OFFSET + 8], byteorder="little"
    )
    authority = None
    if data[_AUTHORITY_TAG_OFFSET] == 1:
        authority = str(Pubkey.from_bytes(data[_AUTHORITY_OFFSET:_AUTHORITY_OFFSET + 32]))

    addresses = [
        str(Pubkey.from_bytes(data[offset:offset + 32]))
        for offset in range(LOOKUP_TABLE_META_SIZE, len(data), 32)
    ]

    return LookupTableAccountInfo(
        address=address,
        addresses=addresses,
        deactivation_slot=deactivation_slot,
        last_extended_slot=last_extended_slot,
        authority=authority,
    )


def encode_lookup_table_account(info: LookupTableAccountInfo) -> bytes:
    """Serialize table information into the on-chain layout."""
    header = bytearray(LOOKUP_TABLE_META_SIZE)
    header[0:4] = _u32(1)
    header[_DEACTIVATION_SLOT_OFFSET:_DEACTIVATION_SLOT_OFFSET + 8] = _u64(info.deactivation_slot)
    header[_LAST_EXTENDED_SLOT_OFFSET:_LAST_EXTENDED_SLOT_OFFSET + 8] = _u64(info.last_extended_slot)
    if info.authority:
        header[_AUTHORITY_TAG_OFFSET] = 1
        header[_AUTHORITY_OFFSET:_AUTHORITY_OFFSET + 32] = bytes(Pubkey.from_string(info.authority))
    body = b"".join(bytes(Pubkey.from_string(a)) for a in info.addresses)
    return bytes(header) + body
