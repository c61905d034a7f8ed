"""
Ledger node package for ClawCloud.

This package holds the authoritative entitlement state machine and serves
it over HTTP. It provides:

- app.models: Tiers, prices, entitlement record, ledger events, API models.
- app.ledger: Ownership registry, pause gate, reentrancy guard, stablecoin
  token model and the EntitlementLedger engine.
- app.publishing: Kafka publisher for committed ledger events.
- app.main: API surface for ledger operations, queries and the event feed.

Guidelines:
- Every mutation goes through EntitlementLedger; nothing else writes state.
- Committed events are append-only and sequence-numbered.
"""
