"""Storage backend drivers."""
