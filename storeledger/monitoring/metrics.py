"""
Prometheus metrics for ledger and order fulfillment monitoring.

Tracks:
- Transfer counts by outcome
- Transfer amounts
- Order creation counts by outcome
- Optimistic concurrency conflicts
- Saga compensations
"""
from prometheus_client import Counter, Histogram

# Ledger metrics
ledger_transfers_total = Counter(
    "ledger_transfers_total",
    "Total number of ledger transfers",
    ["outcome", "direction"],
)

ledger_transfer_amount = Histogram(
    "ledger_transfer_amount",
    "Committed transfer amounts",
    buckets=(1, 10, 50, 100, 500, 1000, 5000, 10000, 50000, 100000),
)

# Order metrics
orders_total = Counter(
    "orders_total",
    "Total number of order creation attempts",
    ["outcome"],
)

order_items_per_order = Histogram(
    "order_items_per_order",
    "Line items per committed order",
    buckets=(1, 2, 3, 5, 10, 20, 50),
)

# Concurrency metrics
concurrency_conflicts_total = Counter(
    "concurrency_conflicts_total",
    "Conditional writes rejected because of a stale version or stock condition",
    ["entity"],  # account, product
)

# Saga metrics
saga_compensations_total = Counter(
    "saga_compensations_total",
    "Saga compensation runs",
    ["saga", "outcome"],  # outcome: compensated, partial
)
