"""Gateway services: authentication, quota ledger, upstream proxy, and billing."""
