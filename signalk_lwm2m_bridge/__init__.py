"""
Signal K to LwM2M Bridge

Subscribes to a Signal K server's delta stream and maps selected paths onto
LwM2M object/instance/resource updates for an external LwM2M client.
"""

__version__ = "1.0.0"
