"""Service layer for the allocation engine."""
