"""GPU sharing helpers: NVIDIA device requests, pod models, OCI spec files and vGPU shared-region monitoring."""

__version__ = "0.1.0"
__all__ = ["k8sutil", "nvidia", "oci", "shared_region", "monitor"]