"""
SPL Token program utilities for Solana.

Program IDs, associated token account derivation and the small set of token
and compute-budget instructions the bundler builds itself. Domain-specific
instructions (create token, buy) come from the instruction SDK.
"""

from typing import List

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")
SYSVAR_RENT_ID = Pubkey.from_string("SysvarRent111111111111111111111111111111111")

# SPL Token Program Instruction Codes
CLOSE_ACCOUNT_INSTRUCTION = 9

# Associated Token Program Instruction Codes
CREATE_ATA_INSTRUCTION = 0
CREATE_ATA_IDEMPOTENT_INSTRUCTION = 1


def get_associated_token_address(
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_2022_PROGRAM_ID
) -> Pubkey:
    """
    Derive the associated token account for an owner and mint.

    Off-curve owners (PDAs such as a bonding curve) derive the same way.

    Args:
        owner: Wallet or PDA owning the token account
        mint: Token mint
        token_program_id: Token program the mint belongs to

    Returns:
        The associated token account address
    """
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program_id), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID
    )
    return address


def create_associated_token_account_instruction(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
    idempotent: bool = False
) -> Instruction:
    """
    Create an instruction that creates the owner's associated token account.

    Args:
        payer: Account paying the rent
        owner: Owner of the new token account
        mint: Token mint
        token_program_id: Token program the mint belongs to
        idempotent: Use the variant that is a no-op when the account exists

    Returns:
        Instruction for the associated token program
    """
    ata = get_associated_token_address(owner, mint, token_program_id)
    keys = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=token_program_id, is_signer=False, is_writable=False),
    ]
    code = CREATE_ATA_IDEMPOTENT_INSTRUCTION if idempotent else CREATE_ATA_INSTRUCTION
    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        data=bytes([code]),
        accounts=keys
    )


def close_account_instruction(
    account: Pubkey,
    destination: Pubkey,
    owner: Pubkey,
    token_program_id: Pubkey = TOKEN_PROGRAM_ID
) -> Instruction:
    """
    Create an instruction closing an empty token account.

    Args:
        account: Token account to close
        destination: Receives the reclaimed rent
        owner: Owner of the token account (signer)
        token_program_id: Token program owning the account

    Returns:
        Instruction for the token program
    """
    keys = [
        AccountMeta(pubkey=account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
    ]
    return Instruction(
        program_id=token_program_id,
        data=bytes([CLOSE_ACCOUNT_INSTRUCTION]),
        accounts=keys
    )


def compute_budget_instructions(unit_limit: int, unit_price: int) -> List[Instruction]:
    """Compute unit ceiling and priority fee (micro-lamports per unit)."""
    return [
        set_compute_unit_limit(unit_limit),
        set_compute_unit_price(unit_price),
    ]


def transfer_instruction(from_pubkey: Pubkey, to_pubkey: Pubkey, lamports: int) -> Instruction:
    return transfer(
        TransferParams(
            from_pubkey=from_pubkey,
            to_pubkey=to_pubkey,
            lamports=lamports
        )
    )
