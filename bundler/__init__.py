"""
Multi-wallet bundle launcher for Solana.

Builds a shared address lookup table, packs per-wallet instruction groups into
size-bounded transactions and submits them as one bundle through a relay, or
one by one on devnet.
"""

__version__ = "0.1.0"
