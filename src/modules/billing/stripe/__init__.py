"""Stripe webhook verification, idempotency and event dispatch."""
