"""
Chain capability records.
"""

from .loader import ChainConfig, ChainRegistry, RegistryCapability, load_chains

__all__ = ["ChainConfig", "ChainRegistry", "RegistryCapability", "load_chains"]
