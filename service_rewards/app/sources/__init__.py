"""
Policy sources.

A policy source is the external store the registry reads through. Sources
implement ``list_active_policies(tenant_id, event_type)`` as a coroutine and
may implement ``get_policy_version(policy_id, version)`` for audit replay.
"""

from .memory import InMemoryPolicySource
from .file import FilePolicySource

__all__ = ["InMemoryPolicySource", "FilePolicySource"]
