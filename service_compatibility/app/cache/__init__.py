"""
Caching for Compatibility Service: rule graph snapshot and Redis result cache.
"""
