"""
Solana side of the bundler.

Lookup table lifecycle, transaction batching, bundle submission and the
wallet pool. We start on devnet, where bundles are sent transaction by
transaction; mainnet submits through a relay so the set lands atomically.
"""
