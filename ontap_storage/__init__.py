"""
ONTAP Storage - control-plane core of an ONTAP storage backend driver.

This package provisions volumes, LUNs, clones and snapshots on an ONTAP
appliance and keeps export policies and initiator groups converged with the
nodes a volume is published to.
"""

__version__ = "0.1.0"
__all__ = ["drivers"]
