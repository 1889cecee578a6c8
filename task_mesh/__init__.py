"""
Task Mesh - capability-based task orchestration for a mesh of agents.
"""

__version__ = "1.0.0"
