"""
Adapters package for the Gateway Service.

Thin wrappers for external dependencies: the upstream completion API and the
class materials records in Redis.
"""

from .materials_store import MaterialsStore, RedisMaterialsStore
from .upstream_client import UpstreamClient

__all__ = [
    "MaterialsStore",
    "RedisMaterialsStore",
    "UpstreamClient",
]
