"""MCTP transport stack with message assembly, bridging, control messages, and LPC/KCS and I3C bindings."""

__version__ = "0.1.0"
__all__ = ["packet", "core", "control", "astlpc", "asti3c"]