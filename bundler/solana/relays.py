"""
Bundle relays.

Two relay protocols sit behind the same Relay interface:

- Jito is poll-based: sendBundle returns a bundle id whose status is polled
  with getInflightBundleStatuses.
- bloXroute is fire-and-wait: submit-batch only accepts or rejects, and
  confirmation is then tracked on the ledger.
"""

import asyncio
import base64
import json
import random
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import base58
import requests
from loguru import logger
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from bundler.config import PROVIDER_BLOXROUTE, BundlerConfig
from bundler.solana.clock import Clock, SYSTEM_CLOCK
from bundler.solana.errors import BundlerConfigError, RelayError, RelayRateLimitError, RelayRejectedError
from bundler.solana.models import RelayStatus, RelaySubmission
from bundler.utils.rate_limit_utils import retry_on_rate_limit

JITO_TIP_ACCOUNTS = [
    "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
    "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
    "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
    "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
    "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
    "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
    "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
    "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
]

BLOXROUTE_TIP_ACCOUNTS = [
    "HWEoBxYs7ssKuudEjzjmpfJVX7Dvi7wescFsVx2L5yoY",
]

JITO_MAX_BUNDLE_SIZE = 5

_JITO_STATUSES = {
    "Pending": RelayStatus.PENDING,
    "Landed": RelayStatus.CONFIRMED,
    "Failed": RelayStatus.FAILED,
    "Invalid": RelayStatus.DROPPED,
}

TERMINAL_RELAY_STATUSES = (RelayStatus.CONFIRMED, RelayStatus.FAILED, RelayStatus.DROPPED)


class Relay(Protocol):
    """Submission path that lands a set of transactions together."""

    name: str
    tip_accounts: List[str]
    max_bundle_size: Optional[int]
    supports_status: bool

    async def submit(self, transactions: Sequence[VersionedTransaction]) -> RelaySubmission: ...

    async def get_status(self, bundle_id: str) -> RelayStatus: ...

    def pick_tip_account(self, rng: Optional[random.Random] = None) -> Pubkey: ...


class HttpRelay:
    """
    Shared HTTP plumbing for relays.

    Requests run in a worker thread; rate-limited calls are retried with
    exponential backoff.
    """

    name = "relay"
    tip_accounts: List[str] = []
    max_bundle_size: Optional[int] = None
    supports_status = False

    def __init__(self, config: BundlerConfig, session: Optional[requests.Session] = None,
                 clock: Optional[Clock] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self.clock = clock or SYSTEM_CLOCK

    def pick_tip_account(self, rng: Optional[random.Random] = None) -> Pubkey:
        return Pubkey.from_string((rng or random).choice(self.tip_accounts))

    def _post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Any:
        try:
            response = self.session.post(
                url, json=payload, headers=headers, timeout=self.config.relay_timeout_seconds
            )
        except requests.exceptions.Timeout as e:
            raise RelayError(f"{self.name} request timeout: {e}") from e
        except requests.exceptions.RequestException as e:
            raise RelayError(f"{self.name} request error: {e}") from e

        if response.status_code == 429:
            raise RelayError(f"{self.name} HTTP 429: {response.text}")
        if not 200 <= response.status_code < 300:
            raise RelayRejectedError(f"{self.name} HTTP {response.status_code}: {response.text}")
        try:
            return response.json()
        except json.JSONDecodeError:
            return {"raw": response.text}

    async def _request(self, label: str, url: str, payload: Dict[str, Any],
                       headers: Optional[Dict[str, str]] = None) -> Any:
        return await retry_on_rate_limit(
            lambda: asyncio.to_thread(self._post, url, payload, headers),
            label=f"{self.name} {label}",
            max_retries=self.config.rate_limit_max_retries,
            initial_backoff=self.config.rate_limit_initial_backoff,
            max_backoff=self.config.rate_limit_max_backoff,
            exhausted_error=RelayRateLimitError,
            clock=self.clock,
        )

    async def get_status(self, bundle_id: str) -> RelayStatus:
        raise RelayError(f"{self.name} does not report bundle status")


class JitoRelay(HttpRelay):
    """Jito block engine, poll-based."""

    name = "jito"
    tip_accounts = JITO_TIP_ACCOUNTS
    max_bundle_size = JITO_MAX_BUNDLE_SIZE
    supports_status = True

    def __init__(self, config: BundlerConfig, session: Optional[requests.Session] = None,
                 clock: Optional[Clock] = None):
        super().__init__(config, session, clock)
        self.url = config.jito_block_engine_url
        logger.info(f"JitoRelay initialized with block engine {self.url}")

    def _rpc_payload(self, method: str, params: List[Any]) -> Dict[str, Any]:
        return {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}

    async def submit(self, transactions: Sequence[VersionedTransaction]) -> RelaySubmission:
        """
        Send a bundle with sendBundle.

        Returns:
            RelaySubmission carrying the bundle id

        Raises:
            RelayRejectedError: The block engine refused the bundle
            RelayRateLimitError: Still rate limited after all retries
        """
        encoded = [base58.b58encode(bytes(tx)).decode("utf-8") for tx in transactions]
        data = await self._request("sendBundle", self.url, self._rpc_payload("sendBundle", [encoded]))

        if data.get("error"):
            message = data["error"].get("message", str(data["error"])) if isinstance(data["error"], dict) \
                else str(data["error"])
            raise RelayRejectedError(f"jito rejected bundle: {message}")
        bundle_id = data.get("result")
        if not bundle_id:
            raise RelayRejectedError(f"jito returned no bundle id: {data}")

        logger.info(f"Jito accepted bundle {bundle_id} ({len(transactions)} transactions)")
        return RelaySubmission(accepted=True, bundle_id=bundle_id)

    async def get_status(self, bundle_id: str) -> RelayStatus:
        """
        Look up a bundle with getInflightBundleStatuses.

        Unknown bundles and unknown status strings count as pending.
        """
        data = await self._request(
            "getInflightBundleStatuses", self.url, self._rpc_payload("getInflightBundleStatuses", [[bundle_id]])
        )
        if data.get("error"):
            raise RelayError(f"jito status error: {data['error']}")

        values = (data.get("result") or {}).get("value") or []
        if not values:
            return RelayStatus.PENDING
        return _JITO_STATUSES.get(values[0].get("status"), RelayStatus.PENDING)


class BloXRouteRelay(HttpRelay):
    """bloXroute submit-batch, fire-and-wait."""

    name = "bloxroute"
    tip_accounts = BLOXROUTE_TIP_ACCOUNTS
    supports_status = False

    def __init__(self, config: BundlerConfig, session: Optional[requests.Session] = None,
                 clock: Optional[Clock] = None):
        """
        Raises:
            BundlerConfigError: If BLOXROUTE_AUTH_TOKEN is not set
        """
        if not config.bloxroute_auth_token:
            raise BundlerConfigError("BLOXROUTE_AUTH_TOKEN must be set to submit through bloXroute")
        super().__init__(config, session, clock)
        self.url = config.bloxroute_submit_batch_url
        logger.info(f"BloXRouteRelay initialized with {self.url}")

    async def submit(self, transactions: Sequence[VersionedTransaction]) -> RelaySubmission:
        entries = [
            {"transaction": {"content": base64.b64encode(bytes(tx)).decode("utf-8")}}
            for tx in transactions
        ]
        data = await self._request(
            "submit-batch",
            self.url,
            {"entries": entries},
            headers={"Authorization": self.config.bloxroute_auth_token},
        )
        logger.info(f"bloXroute accepted batch of {len(transactions)} transactions")
        return RelaySubmission(accepted=True, message=json.dumps(data)[:500])


def create_relay(config: BundlerConfig, session: Optional[requests.Session] = None,
                 clock: Optional[Clock] = None) -> HttpRelay:
    if config.bundle_provider == PROVIDER_BLOXROUTE:
        return BloXRouteRelay(config, session, clock)
    return JitoRelay(config, session, clock)


class BundleStatusPoller:
    """
    Polls a relay until the bundle reaches a terminal status.

    States: pending until confirmed, failed or dropped, or until the poll
    budget is spent (the result then stays pending). A status request that
    fails counts as a pending poll; the bundle was already accepted.
    """

    def __init__(self, relay: Relay, poll_interval_seconds: float, max_polls: int,
                 clock: Optional[Clock] = None):
        self.relay = relay
        self.poll_interval_seconds = poll_interval_seconds
        self.max_polls = max_polls
        self.clock = clock or SYSTEM_CLOCK

    async def wait(self, bundle_id: str) -> Tuple[RelayStatus, int]:
        """
        Poll the bundle status.

        Returns:
            Tuple of (last status, number of polls made)
        """
        status = RelayStatus.PENDING
        for poll in range(1, self.max_polls + 1):
            try:
                status = await self.relay.get_status(bundle_id)
            except RelayError as e:
                logger.warning(f"Bundle {bundle_id} poll {poll}: status unavailable: {e}")
            else:
                logger.debug(f"Bundle {bundle_id} poll {poll}: {status.value}")
                if status in TERMINAL_RELAY_STATUSES:
                    return status, poll
            if poll < self.max_polls:
                await self.clock.sleep(self.poll_interval_seconds)

        logger.warning(f"Bundle {bundle_id} still {status.value} after {self.max_polls} polls")
        return status, self.max_polls
