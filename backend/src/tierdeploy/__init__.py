"""
Deployment orchestrator for tiered Kubernetes releases.
"""

__version__ = "1.0.0"
