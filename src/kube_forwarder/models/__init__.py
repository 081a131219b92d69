"""
Models package - typed values passed between forwarder components.

Defines data models for:
- Resource references parsed from the command line
- Resolved targets produced by endpoint resolution
"""

from .resource import ResolvedTarget, ResourceKind, ResourceReference, parse_resource

__all__ = ["ResourceKind", "ResourceReference", "ResolvedTarget", "parse_resource"]
