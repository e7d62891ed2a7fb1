"""Workflow file loading and CLI commands."""
