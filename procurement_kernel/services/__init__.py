"""Kernel services: repository, order state machine, stock ledger."""
