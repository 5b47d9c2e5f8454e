"""Redemption orchestration and outbound collaborators."""
