"""HTTP adapter for the commission ledger services."""
