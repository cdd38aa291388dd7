"""Retail visibility platform backend."""
