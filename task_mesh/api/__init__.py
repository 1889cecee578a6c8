"""
HTTP control plane for Task Mesh.
"""

from .dependencies import ServiceComponents, build_components
from .main import create_app

__all__ = ['ServiceComponents', 'build_components', 'create_app']
