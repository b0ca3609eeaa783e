"""Reverse-proxy configuration for tenant preview URLs."""

from proxy.manager import ProxyConfigManager
from proxy.nginx import ProxyConfigDocument, ProxyRoute, render

__all__ = ["ProxyConfigDocument", "ProxyConfigManager", "ProxyRoute", "render"]
