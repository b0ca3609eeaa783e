"""Sandbox container management for tenant workspaces.

This module provides the ContainerLifecycleManager that creates and destroys
Docker containers, the ContainerPool that maps tenants to containers, and the
deployment profiles that parameterise both.
"""

from sandbox.errors import SandboxError
from sandbox.lifecycle import ContainerLifecycleManager, HealthReport
from sandbox.pool import ContainerPool
from sandbox.profiles import DeploymentProfile, resolve_profile
from sandbox.records import ContainerRecord, ContainerStatus

__all__ = [
    "ContainerLifecycleManager",
    "ContainerPool",
    "ContainerRecord",
    "ContainerStatus",
    "DeploymentProfile",
    "HealthReport",
    "SandboxError",
    "resolve_profile",
]
