"""kubefleet - Kubernetes cluster lifecycle orchestration over SSH-reachable hosts."""

__version__ = "0.1.0"
