"""
Exceptions raised by the bundler core.

Every error derives from BundlerError so callers can catch the whole family,
while the subclasses keep the retry-later, configuration and terminal cases
apart.
"""

from typing import Any, List, Optional


class BundlerError(Exception):
    """Base exception for bundler errors."""
    pass


class BundlerConfigError(BundlerError):
    """Build-time configuration problem, raised before any network call."""
    pass


class BatchSizeError(BundlerConfigError):
    """A single instruction group cannot fit in one transaction."""
    pass


class KeyMaterialError(BundlerError):
    """Key material that fails to decode. Fatal for the run."""
    pass


class RpcError(BundlerError):
    """Ledger RPC call failed."""
    pass


class RpcRateLimitError(RpcError):
    """Ledger RPC kept rate limiting after all retries."""
    pass


class TransactionSendError(RpcError):
    """The ledger rejected a transaction at send time."""

    def __init__(self, message: str, logs: Optional[List[str]] = None):
        super().__init__(message)
        self.logs = logs or []


class ConfirmationError(BundlerError):
    """A sent transaction did not confirm."""

    def __init__(self, signature: str, message: str):
        super().__init__(message)
        self.signature = signature


class TransactionFailedError(ConfirmationError):
    """The ledger reported an explicit error for a signature."""

    def __init__(self, signature: str, err: Any):
        super().__init__(signature, f"Transaction {signature} failed: {err}")
        self.err = err


class ConfirmationTimeoutError(ConfirmationError):
    """Confirmation polling reached its deadline."""

    def __init__(self, signature: str, timeout_seconds: float, last_status: Any = None):
        super().__init__(
            signature,
            f"Confirmation timeout for {signature} after {timeout_seconds:.0f}s. Last status: {last_status}"
        )
        self.timeout_seconds = timeout_seconds
        self.last_status = last_status


class LookupTableError(BundlerError):
    """Lookup table lifecycle error."""
    pass


class LookupTableNotFoundError(LookupTableError):
    """The lookup table account does not resolve on-chain."""
    pass


class LookupTableCooldownError(LookupTableError):
    """Close attempted before the deactivation cooldown elapsed. Retry later."""
    pass


class LookupTableStateError(LookupTableError):
    """Illegal lookup table state transition."""
    pass


class SimulationFailedError(BundlerError):
    """The critical transaction failed its dry run."""

    def __init__(self, err: Any, logs: Optional[List[str]] = None, index: int = 0):
        super().__init__(f"Simulation failed for transaction {index + 1}: {err}")
        self.err = err
        self.logs = logs or []
        self.index = index


class RelayError(BundlerError):
    """Relay submission or status call failed."""
    pass


class RelayRateLimitError(RelayError):
    """Relay kept rate limiting after all retries."""
    pass


class RelayRejectedError(RelayError):
    """Relay refused the bundle."""
    pass
