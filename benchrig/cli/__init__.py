"""
benchrig command line interface.

Thin click commands over ``benchrig.control.ControlPlane`` with rich output.
"""

from .display import RigDisplay
from .main import cli, main

__all__ = ["RigDisplay", "main", "cli"]
