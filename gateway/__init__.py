"""
mintsaga - Gateway Package

Adapters for the three external authorities plus the ambient plumbing
they share. Nothing is imported eagerly: web3 and websockets are only
loaded when their modules are actually used, so the lifecycle core and
its tests can import gateway.config or gateway.retry on their own.

Plumbing (stdlib + PyYAML):
  - gateway.config: three-tier YAML settings
  - gateway.logging: JSON structured logging
  - gateway.retry: backoff policy and retry for idempotent reads
  - gateway.compensation: exactly-once rollback ledger (SQLite)

Authorities:
  - gateway.backend: httpx client for the backend record
  - gateway.ledger: web3 point reads and receipt association
  - gateway.signer: signing agent protocol and revert decoding
  - gateway.realtime: websocket push channel with reconnect
"""
