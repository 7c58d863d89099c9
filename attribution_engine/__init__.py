"""Multi-touch attribution credit engine."""
