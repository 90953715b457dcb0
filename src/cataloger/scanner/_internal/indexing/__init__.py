"""Scan pipeline orchestration."""
