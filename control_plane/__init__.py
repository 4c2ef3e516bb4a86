"""Application control plane: service bindings and build-cache volumes on Kubernetes."""

__version__ = "1.0.0"
