"""
Ledger RPC capability.

The core only talks to the ledger through LedgerRpc, so any client offering
these operations can be substituted (tests use an in-memory ledger).
SolanaLedgerRpc implements it on top of solana-py's AsyncClient and retries
rate-limited calls with exponential backoff.
"""

from typing import Awaitable, Callable, List, Optional, Protocol, TypeVar

from loguru import logger
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from bundler.config import BundlerConfig
from bundler.solana.clock import Clock, SYSTEM_CLOCK
from bundler.solana.errors import BundlerError, RpcError, RpcRateLimitError, TransactionSendError
from bundler.solana.models import BlockhashInfo, SignatureStatus, SimulationResult, TokenAccountInfo
from bundler.utils.rate_limit_utils import error_text, is_rate_limit_error, retry_on_rate_limit

T = TypeVar("T")


def _confirmation_status_name(status) -> Optional[str]:
    """processed, confirmed or finalized."""
    if status is None:
        return None
    return str(status).split(".")[-1].lower()


class LedgerRpc(Protocol):
    """Operations the bundler needs from a ledger node."""

    async def get_latest_blockhash(self) -> BlockhashInfo: ...

    async def get_slot(self) -> int: ...

    async def get_balance(self, pubkey: Pubkey) -> int: ...

    async def get_account_data(self, pubkey: Pubkey) -> Optional[bytes]: ...

    async def get_token_accounts(self, owner: Pubkey, program_id: Pubkey) -> List[TokenAccountInfo]: ...

    async def send_transaction(self, tx: VersionedTransaction, skip_preflight: bool = False) -> str: ...

    async def simulate_transaction(self, tx: VersionedTransaction) -> SimulationResult: ...

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]: ...


def _send_error_logs(error: RPCException) -> List[str]:
    """Preflight log lines carried by a send error, when the node returned any."""
    payload = error.args[0] if error.args else None
    data = getattr(payload, "data", None)
    logs = getattr(data, "logs", None)
    return list(logs) if logs else []


def _is_rate_limited(error: BaseException) -> bool:
    """
    Rate-limit check for ledger calls.

    A node error carrying preflight logs is a rejected transaction, never a
    rate limit. Otherwise the node's error code or message decides, so log
    text or numbers inside the payload cannot trigger a retry.
    """
    if isinstance(error, RPCException):
        if _send_error_logs(error):
            return False
        payload = error.args[0] if error.args else None
        if getattr(payload, "code", None) == 429:
            return True
        message = getattr(payload, "message", None)
        if message is not None:
            return is_rate_limit_error(str(message))
    return is_rate_limit_error(error_text(error))


class SolanaLedgerRpc:
    """
    LedgerRpc backed by solana-py's AsyncClient.
    """

    def __init__(self, config: BundlerConfig, client: Optional[AsyncClient] = None,
                 clock: Optional[Clock] = None):
        """
        Initialize the ledger client.

        Args:
            config: Run configuration (RPC URL and rate-limit settings)
            client: Pre-built AsyncClient, mainly for tests
            clock: Clock used for backoff sleeps
        """
        self.config = config
        self.client = client or AsyncClient(config.rpc_url, commitment=Confirmed)
        self.clock = clock or SYSTEM_CLOCK
        logger.info(f"SolanaLedgerRpc initialized on {config.cluster}")

    async def close(self) -> None:
        await self.client.close()

    async def _call(self, label: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await retry_on_rate_limit(
                operation,
                label=label,
                max_retries=self.config.rate_limit_max_retries,
                initial_backoff=self.config.rate_limit_initial_backoff,
                max_backoff=self.config.rate_limit_max_backoff,
                exhausted_error=RpcRateLimitError,
                clock=self.clock,
                is_rate_limited=_is_rate_limited,
            )
        except BundlerError:
            raise
        except Exception as e:
            raise RpcError(f"{label} failed: {error_text(e)}") from e

    async def get_latest_blockhash(self) -> BlockhashInfo:
        resp = await self._call("get_latest_blockhash", lambda: self.client.get_latest_blockhash())
        return BlockhashInfo(
            blockhash=resp.value.blockhash,
            last_valid_block_height=resp.value.last_valid_block_height
        )

    async def get_slot(self) -> int:
        resp = await self._call("get_slot", lambda: self.client.get_slot())
        return resp.value

    async def get_balance(self, pubkey: Pubkey) -> int:
        resp = await self._call("get_balance", lambda: self.client.get_balance(pubkey))
        return resp.value

    async def get_account_data(self, pubkey: Pubkey) -> Optional[bytes]:
        resp = await self._call("get_account_info", lambda: self.client.get_account_info(pubkey))
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    async def get_token_accounts(self, owner: Pubkey, program_id: Pubkey) -> List[TokenAccountInfo]:
        """
        List parsed token accounts of an owner under one token program.

        Args:
            owner: Wallet owning the accounts
            program_id: Token program to query

        Returns:
            Token accounts with raw amounts and rent lamports
        """
        resp = await self._call(
            "get_token_accounts_by_owner",
            lambda: self.client.get_token_accounts_by_owner_json_parsed(
                owner, TokenAccountOpts(program_id=program_id)
            )
        )
        accounts = []
        for keyed in resp.value:
            info = keyed.account.data.parsed["info"]
            accounts.append(TokenAccountInfo(
                address=str(keyed.pubkey),
                mint=info["mint"],
                program_id=str(program_id),
                amount=int(info["tokenAmount"]["amount"]),
                lamports=keyed.account.lamports,
            ))
        return accounts

    async def send_transaction(self, tx: VersionedTransaction, skip_preflight: bool = False) -> str:
        """
        Send a signed transaction.

        Args:
            tx: Signed versioned transaction
            skip_preflight: Skip the node's preflight simulation

        Returns:
            Transaction signature

        Raises:
            TransactionSendError: If the node rejected the transaction
        """
        opts = TxOpts(skip_preflight=skip_preflight, preflight_commitment=Confirmed)
        try:
            resp = await self._call("send_transaction", lambda: self.client.send_transaction(tx, opts=opts))
        except RpcRateLimitError:
            raise
        except RpcError as e:
            cause = e.__cause__
            logs = _send_error_logs(cause) if isinstance(cause, RPCException) else []
            raise TransactionSendError(str(e), logs) from cause
        return str(resp.value)

    async def simulate_transaction(self, tx: VersionedTransaction) -> SimulationResult:
        resp = await self._call(
            "simulate_transaction",
            lambda: self.client.simulate_transaction(tx, sig_verify=False, commitment=Confirmed)
        )
        value = resp.value
        return SimulationResult(
            err=str(value.err) if value.err is not None else None,
            logs=list(value.logs or []),
            units_consumed=value.units_consumed
        )

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        """
        Fetch the status of one signature.

        Returns:
            The status, or None while the ledger has not seen the signature
        """
        resp = await self._call(
            "get_signature_statuses",
            lambda: self.client.get_signature_statuses([Signature.from_string(signature)])
        )
        status = resp.value[0] if resp.value else None
        if status is None:
            return None
        return SignatureStatus(
            signature=signature,
            confirmation_status=_confirmation_status_name(status.confirmation_status),
            err=str(status.err) if status.err is not None else None
        )
