"""
Guard entrypoints: capability, tier and resource guards.
"""

from .guards import AccessGuard, ResourceAccess

__all__ = ["AccessGuard", "ResourceAccess"]
