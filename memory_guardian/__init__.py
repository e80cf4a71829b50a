"""
Tiered memory-pressure defense: kernel OOM tuning, a userspace early
reaper, a periodic cache-reclaiming guardian and an on-demand emergency
cleanup.
"""

from hostopt.env_loader import EnvLoader

EnvLoader.load()

__all__ = ["EnvLoader"]
