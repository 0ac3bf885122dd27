"""
Configuration for the bundler.

Environment variables are loaded once with python-dotenv and gathered into an
immutable BundlerConfig that is passed to every component.
"""

import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

LAMPORTS_PER_SOL = 1_000_000_000

DEVNET = "devnet"
MAINNET = "mainnet"

PROVIDER_JITO = "jito"
PROVIDER_BLOXROUTE = "bloxroute"

# 32-byte addresses that fit one extend transaction with the compute budget prefix
MAX_EXTEND_CHUNK_SIZE = 27


class BundlerConfig(BaseModel):
    """Immutable run configuration."""
    model_config = ConfigDict(frozen=True)

    # Cluster
    cluster: str = DEVNET
    rpc_url: str = "https://api.devnet.solana.com"
    ws_url: str = ""
    main_wallet_private_key: str = ""

    # Relay
    bundle_provider: str = PROVIDER_JITO
    jito_block_engine_url: str = "https://tokyo.mainnet.block-engine.jito.wtf/api/v1/bundles"
    jito_fee_lamports: int = 5_000_000
    bloxroute_submit_batch_url: str = "https://germany.solana.dex.blxrbdn.com/api/v2/submit-batch"
    bloxroute_auth_token: Optional[str] = None
    bloxroute_tip_lamports: int = 1_000_000
    simulate_only: bool = False
    relay_fallback_sequential: bool = True
    relay_poll_seconds: float = 2.0
    relay_max_polls: int = 30
    relay_timeout_seconds: float = 15.0

    # Batching
    bundle_wallet_count: int = 5
    wallets_per_tx: int = 5
    max_tx_bytes: int = 1232
    compute_unit_limit: int = 400_000
    compute_unit_price: int = 100_000
    admin_compute_unit_limit: int = 50_000
    admin_compute_unit_price: int = 500_000

    # Lookup tables
    lut_extend_chunk_size: int = 20
    lut_activation_delay_seconds: float = 20.0
    lut_extend_pause_seconds: float = 2.0
    lut_cooldown_slots: int = 513

    # Confirmation
    confirmation_timeout_seconds: float = 90.0
    confirmation_poll_seconds: float = 2.0
    bundle_confirmation_timeout_seconds: float = 60.0
    skip_preflight: bool = True
    inter_tx_delay_seconds: float = 0.6

    # Rate limiting
    rate_limit_max_retries: int = 5
    rate_limit_initial_backoff: float = 2.0
    rate_limit_max_backoff: float = 60.0

    # Fan-out / fan-in
    sol_distribute_min: float = 0.01
    sol_distribute_max: float = 0.05
    rent_buffer_sol: float = 0.005
    transfer_batch_size: int = 8
    gather_min_keep_sol: float = 0.001
    tx_fee_lamports: int = 5000

    # Buys
    bundle_buy_sol_min: float = 0.005
    bundle_buy_sol_max: float = 0.02
    buy_fraction_of_min_distribution: float = 0.85
    mint_public_key: Optional[str] = None

    # Storage
    state_file: str = "data.json"
    wallets_dir: str = "wallets"
    wallet_passphrase: Optional[str] = None

    log_level: str = "INFO"

    @field_validator("cluster")
    @classmethod
    def _check_cluster(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in (DEVNET, MAINNET):
            raise ValueError("CLUSTER must be 'devnet' or 'mainnet'")
        return value

    @field_validator("bundle_provider")
    @classmethod
    def _check_provider(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in (PROVIDER_JITO, PROVIDER_BLOXROUTE):
            raise ValueError("BUNDLE_PROVIDER must be 'jito' or 'bloxroute'")
        return value

    @field_validator(
        "bundle_wallet_count", "wallets_per_tx", "max_tx_bytes",
        "lut_extend_chunk_size", "transfer_batch_size", "relay_max_polls",
    )
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _check_ranges(self) -> "BundlerConfig":
        if self.sol_distribute_min > self.sol_distribute_max:
            raise ValueError("SOL_DISTRIBUTE_MIN must not exceed SOL_DISTRIBUTE_MAX")
        if self.bundle_buy_sol_min > self.bundle_buy_sol_max:
            raise ValueError("BUNDLE_BUY_SOL_MIN must not exceed BUNDLE_BUY_SOL_MAX")
        if self.lut_extend_chunk_size > MAX_EXTEND_CHUNK_SIZE:
            raise ValueError(f"LUT_EXTEND_CHUNK_SIZE must be at most {MAX_EXTEND_CHUNK_SIZE}")
        return self

    @property
    def is_mainnet(self) -> bool:
        return self.cluster == MAINNET

    @property
    def tip_lamports(self) -> int:
        if self.bundle_provider == PROVIDER_BLOXROUTE:
            return self.bloxroute_tip_lamports
        return self.jito_fee_lamports

    @property
    def rent_buffer_lamports(self) -> int:
        return int(self.rent_buffer_sol * LAMPORTS_PER_SOL)

    @property
    def gather_min_keep_lamports(self) -> int:
        return int(self.gather_min_keep_sol * LAMPORTS_PER_SOL)


def _require(env: Mapping[str, str], name: str) -> str:
    value = (env.get(name) or "").strip()
    if not value:
        raise ValueError(f"Missing required env: {name}")
    return value


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# env var -> (field, parser)
_OPTIONAL_ENV = {
    "MAINNET_WEBSOCKET_URL": None,
    "DEVNET_WEBSOCKET_URL": None,
    "BUNDLE_PROVIDER": ("bundle_provider", str),
    "JITO_BLOCK_ENGINE_URL": ("jito_block_engine_url", str),
    "JITO_FEE_LAMPORTS": ("jito_fee_lamports", int),
    "JITO_SIMULATE_ONLY": ("simulate_only", _flag),
    "BLOXROUTE_SUBMIT_BATCH_URL": ("bloxroute_submit_batch_url", str),
    "BLOXROUTE_AUTH_TOKEN": ("bloxroute_auth_token", str),
    "BLOXROUTE_TIP_LAMPORTS": ("bloxroute_tip_lamports", int),
    "RELAY_FALLBACK_SEQUENTIAL": ("relay_fallback_sequential", _flag),
    "RELAY_POLL_SECONDS": ("relay_poll_seconds", float),
    "RELAY_MAX_POLLS": ("relay_max_polls", int),
    "RELAY_TIMEOUT_SECONDS": ("relay_timeout_seconds", float),
    "BUNDLER_WALLET_COUNT": ("bundle_wallet_count", int),
    "WALLETS_PER_TX": ("wallets_per_tx", int),
    "MAX_TX_BYTES": ("max_tx_bytes", int),
    "COMPUTE_UNIT_LIMIT": ("compute_unit_limit", int),
    "COMPUTE_UNIT_PRICE": ("compute_unit_price", int),
    "ADMIN_COMPUTE_UNIT_LIMIT": ("admin_compute_unit_limit", int),
    "ADMIN_COMPUTE_UNIT_PRICE": ("admin_compute_unit_price", int),
    "LUT_EXTEND_CHUNK_SIZE": ("lut_extend_chunk_size", int),
    "LUT_ACTIVATION_DELAY_SECONDS": ("lut_activation_delay_seconds", float),
    "LUT_EXTEND_PAUSE_SECONDS": ("lut_extend_pause_seconds", float),
    "LUT_COOLDOWN_SLOTS": ("lut_cooldown_slots", int),
    "CONFIRMATION_TIMEOUT_SECONDS": ("confirmation_timeout_seconds", float),
    "CONFIRMATION_POLL_SECONDS": ("confirmation_poll_seconds", float),
    "BUNDLE_CONFIRMATION_TIMEOUT_SECONDS": ("bundle_confirmation_timeout_seconds", float),
    "SKIP_PREFLIGHT": ("skip_preflight", _flag),
    "INTER_TX_DELAY_SECONDS": ("inter_tx_delay_seconds", float),
    "RATE_LIMIT_MAX_RETRIES": ("rate_limit_max_retries", int),
    "RATE_LIMIT_INITIAL_BACKOFF": ("rate_limit_initial_backoff", float),
    "RATE_LIMIT_MAX_BACKOFF": ("rate_limit_max_backoff", float),
    "SOL_DISTRIBUTE_MIN": ("sol_distribute_min", float),
    "SOL_DISTRIBUTE_MAX": ("sol_distribute_max", float),
    "RENT_BUFFER_SOL": ("rent_buffer_sol", float),
    "TRANSFER_BATCH_SIZE": ("transfer_batch_size", int),
    "GATHER_MIN_KEEP_SOL": ("gather_min_keep_sol", float),
    "TX_FEE_LAMPORTS": ("tx_fee_lamports", int),
    "BUNDLE_BUY_SOL_MIN": ("bundle_buy_sol_min", float),
    "BUNDLE_BUY_SOL_MAX": ("bundle_buy_sol_max", float),
    "BUY_FRACTION_OF_MIN_DISTRIBUTION": ("buy_fraction_of_min_distribution", float),
    "MINT_PUBLIC_KEY": ("mint_public_key", str),
    "STATE_FILE": ("state_file", str),
    "WALLETS_DIR": ("wallets_dir", str),
    "WALLET_PASSPHRASE": ("wallet_passphrase", str),
    "LOG_LEVEL": ("log_level", str),
}


def load_config(env: Optional[Mapping[str, str]] = None) -> BundlerConfig:
    """
    Build the run configuration from environment variables.

    Args:
        env: Mapping to read instead of os.environ (the .env file is only
            loaded when reading os.environ)

    Returns:
        Frozen BundlerConfig

    Raises:
        ValueError: If a required variable is missing or a value is invalid
    """
    if env is None:
        load_dotenv()
        env = os.environ

    cluster = _require(env, "CLUSTER").lower()
    mainnet_rpc = _require(env, "MAINNET_RPC_URL")
    devnet_rpc = _require(env, "DEVNET_RPC_URL")
    is_mainnet = cluster == MAINNET

    values = {
        "cluster": cluster,
        "rpc_url": mainnet_rpc if is_mainnet else devnet_rpc,
        "ws_url": (env.get("MAINNET_WEBSOCKET_URL" if is_mainnet else "DEVNET_WEBSOCKET_URL") or "").strip(),
        "main_wallet_private_key": _require(env, "MAIN_WALLET_PRIVATE_KEY"),
    }

    for name, target in _OPTIONAL_ENV.items():
        raw = env.get(name)
        if target is None or raw is None or not raw.strip():
            continue
        field, parser = target
        values[field] = parser(raw.strip())

    return BundlerConfig(**values)
