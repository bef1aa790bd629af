"""ingestion/__init__.py

Ledger read side. See ingestion.rpc.
"""
