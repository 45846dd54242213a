"""Warehouse schema for the electric balance store."""
