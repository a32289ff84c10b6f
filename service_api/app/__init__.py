"""
Curve Data API application package.

Contains the service entry point (main.py), the caching and batching cores
shared by every endpoint, upstream adapters, chain configuration and the
endpoint handlers under domain/.
"""
