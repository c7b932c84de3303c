"""Statement Importer: CSV bank statement import pipeline for a personal-finance ledger."""
