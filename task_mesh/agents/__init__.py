"""
Agent-side runtime.
"""

from .base import BaseAgent

__all__ = ['BaseAgent']
