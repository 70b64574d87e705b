"""Order queue: persistent store, lease-based processor and owner-facing services."""
