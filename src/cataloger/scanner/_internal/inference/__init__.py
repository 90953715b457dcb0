"""Relationship inference."""
