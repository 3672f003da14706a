"""Utility modules for the Family Finance API."""
