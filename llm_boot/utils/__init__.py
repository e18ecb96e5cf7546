"""Helpers shared by the HTTP layer."""
