"""Versioned data migrations. One module per ledger version."""
