"""
Provisioner package for ClawCloud.

This package turns ledger entitlements into running cloud instances. It
provides:

- app.ledger_client: Local and HTTP clients acting as the provisioning identity.
- app.events: Event sources, checkpoint stores and the deduplicating observer.
- app.status: Fulfillment records and their stores (PostgreSQL, Redis, memory).
- app.cloud: Cloud adapters (GCP, AWS, local), key generation, bootstrap script.
- app.reconciler: Per-id exclusivity and the provisioning reconciler.
- app.credentials: Encryption of generated private keys at rest.
- app.context: Construction of every client and store from configuration.
- app.worker: Bounded-concurrency loop feeding events to the reconciler.
- app.main: Operator API over fulfillment records.

Guidelines:
- The provisioner never mutates the ledger except through set_provisioned
  and update_network_address.
- Every reconciliation step must be safe to re-run.
"""
