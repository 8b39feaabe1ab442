"""Runtime policy helpers (binary resolution)."""
