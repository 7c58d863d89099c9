"""Background workers (ARQ) for attribution runs and rollups."""
