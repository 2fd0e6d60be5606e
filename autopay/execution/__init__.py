"""
Execution module.

Contains task discovery, settlement composition and the optimistic executor.

ARCHITECTURE:
    OptimisticExecutor (single scan loop)
        │
        ├── TaskDiscovery (TaskCreated events → live PENDING tasks that are due)
        │
        ├── AtomicSettlementComposer (one transaction per settlement)
        │       │
        │       ├── WithdrawAdapterRegistry (suilend | navi | scallop)
        │       └── SwapAdapter (cetus-style pool)
        │
        ├── ErrorClassifier + RetryPolicy (retry / drop / quarantine)
        │
        └── RetryQueue (one timer per task id)
"""
