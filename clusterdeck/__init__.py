"""
clusterdeck - lifecycle controller and cluster access layer for a locally
provisioned Kubernetes cluster.
"""

__version__ = "0.1.0"
