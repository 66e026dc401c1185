"""Timeouts, retries, circuit breakers and the embedding cache."""
