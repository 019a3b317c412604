"""Devices, device maps, replica allocation and health checks for GPU resources."""