"""Parallel sub-task orchestrator with durable state, progress ledger and reclamation."""

__version__ = "0.1.0"
