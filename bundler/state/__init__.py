"""Persisted run state."""
