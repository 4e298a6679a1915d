"""
Guarded image upgrades for Kubernetes Deployments with automatic rollback.
"""

__version__ = "0.1.0"
