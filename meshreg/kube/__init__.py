"""
Cluster object types, watch caches and conversion to the registry model.
"""

from .client import EventHandler, FilteredObjectCache, InMemoryObjectCache, ObjectCache

__all__ = ["EventHandler", "FilteredObjectCache", "InMemoryObjectCache", "ObjectCache"]
