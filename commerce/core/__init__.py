"""Cross-service building blocks: errors, sagas, outbox, idempotency, caching, locks."""
