"""
Ledger module.

In-process reference ledger: the escrow state machine, the programmable
transaction model, simulated venues and an async client over the runtime.
"""
from autopay.ledger.clock import Clock, ManualClock, SystemClock
from autopay.ledger.escrow import EscrowLedger, TxContext
from autopay.ledger.keys import KeypairSigner, recover_signer
from autopay.ledger.runtime import LocalLedger
from autopay.ledger.transaction import Transaction, TransactionEffects

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "EscrowLedger",
    "TxContext",
    "KeypairSigner",
    "recover_signer",
    "LocalLedger",
    "Transaction",
    "TransactionEffects",
]
