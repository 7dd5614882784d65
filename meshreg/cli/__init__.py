"""
meshreg command line interface.

Offline tools for inspecting what the registry controller builds from a
snapshot of cluster objects.
"""

from .inspector import InspectionReport, RegistryInspector
from .main import cli, main

__all__ = ["InspectionReport", "RegistryInspector", "cli", "main"]
