"""
Autopay relayer: scheduled on-ledger escrow plus the off-ledger optimistic executor
that settles due tasks, optionally through a yield position and a swap.
"""
__version__ = "1.0.0"
