"""
Publishing package for the Ledger node.

Pushes committed events to Kafka so subscribers need not poll; the HTTP
event feed remains the source of truth for catch-up.
"""
