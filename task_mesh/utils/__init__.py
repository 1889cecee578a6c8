"""
Shared utilities: configuration, logging, error handling and metrics.
"""
