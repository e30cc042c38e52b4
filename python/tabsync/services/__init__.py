"""Service-layer functions built on the storage contract."""
