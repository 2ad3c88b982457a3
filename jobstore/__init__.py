"""Distributed lock and write transactions over a shared job store."""
