"""Inventory and accounting core for a retail chain."""

__version__ = "0.1.0"
