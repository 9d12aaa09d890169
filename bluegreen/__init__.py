"""Blue-green deployment with graceful session draining."""

__version__ = "1.0.0"

PROTOCOL_VERSION = 1
