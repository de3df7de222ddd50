"""
Catalog accessor and rule store implementations.
"""
