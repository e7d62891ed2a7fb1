"""Persisted run schemas."""
