"""
Yield Safe Keeper - impermanent-loss protection for liquidity vaults

Watches vaults locked at the vault contract, prices their pools through a
cached oracle with static fallbacks, computes constant-product impermanent
loss and partially unwinds positions whose loss exceeds the owner's policy.

Key Features:
- Vault datum decoding from the ledger indexer
- Live, cached and estimated pool snapshots
- Fixed-rate monitoring loop with bounded retries
- Graduated partial exits through a settlement layer
- MongoDB registry with an append-only protection log
- Structured logging with optional log shipping

Version: 1.0.0
"""

__version__ = "1.0.0"
