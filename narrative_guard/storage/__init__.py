"""Cost ledger storage."""
