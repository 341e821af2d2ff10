"""Tool-server groups.

Submodules:
  credentials  — credential contract → env vars and AWS credential files
  discovery    — MCP handshake with retry (ToolDiscoveryClient)
  registry     — token issuance + tool registration (ToolRegistryClient)
  templates    — GroupTemplate models, built-in AWS template, JSON loader, hash
  runtime      — GroupRuntime: provision / teardown
"""

from drydock.groups.runtime import GroupRuntime
from drydock.groups.templates import GroupTemplate, compute_template_hash, get_template

__all__ = ["GroupRuntime", "GroupTemplate", "compute_template_hash", "get_template"]
