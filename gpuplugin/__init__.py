"""GPU resource management: device maps, replicas, allocation, health checks and vGPU detection."""

__version__ = "0.14.1"