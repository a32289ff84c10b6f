"""
Curve Data API service.
"""
