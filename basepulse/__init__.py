"""
BasePulse Indexer

Ingests PollsContract events into relational projections:
- Poll records and their distribution mode
- Append-only distribution ledger
- Per-address leaderboard aggregates
- Durable per-chain checkpoints for crash-safe resume
"""

__version__ = "0.1.0"
__author__ = "BasePulse Team"
