"""Sync protocols, local store and ledger business rules."""
