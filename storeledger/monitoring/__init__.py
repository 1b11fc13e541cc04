"""Logging and metrics for storeledger."""
from .logging import operation_context, setup_logging

__all__ = ["operation_context", "setup_logging"]
