"""Background workers: outbox publisher and saga/reservation recovery."""
