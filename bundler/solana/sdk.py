"""
Instruction SDK collaborator.

The bundler never encodes the launchpad program's instructions itself. An
implementation of InstructionSdk supplies them, together with the accounts
those instructions reference so the lookup table can cover them.
"""

from typing import List, Protocol

from solders.instruction import Instruction
from solders.pubkey import Pubkey


class InstructionSdk(Protocol):
    """Builds the program-specific instructions for create and buy."""

    @property
    def token_program_id(self) -> Pubkey:
        """Token program the launched mints use."""
        ...

    def program_accounts(self, mint: Pubkey, creator: Pubkey) -> List[Pubkey]:
        """
        Fixed and mint-derived accounts referenced by create and buy.

        Includes the program IDs, global state, the bonding curve and its
        token account, the creator fee vault and the fee recipient.
        """
        ...

    def participant_accounts(self, mint: Pubkey, wallet: Pubkey) -> List[Pubkey]:
        """Per-buyer accounts other than the wallet and its token account."""
        ...

    async def token_exists(self, mint: Pubkey) -> bool:
        ...

    async def fetch_creator(self, mint: Pubkey) -> Pubkey:
        ...

    async def build_create_instructions(self, mint: Pubkey, creator: Pubkey) -> List[Instruction]:
        ...

    async def build_buy_instructions(
        self,
        mint: Pubkey,
        creator: Pubkey,
        buyer: Pubkey,
        sol_lamports: int
    ) -> List[Instruction]:
        """
        Buy instructions spending sol_lamports for the buyer.

        The buyer's associated token account is created by the bundler in
        the same transaction, ahead of these instructions.
        """
        ...
