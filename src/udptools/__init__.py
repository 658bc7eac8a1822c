"""
udptools - UDP diagnostic tools: a multiplexed reflector, a batched
loss-measuring prober and the hex packet codec they share
"""

__version__ = "1.0.0"
