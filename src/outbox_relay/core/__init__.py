"""Core outbox relay components."""
