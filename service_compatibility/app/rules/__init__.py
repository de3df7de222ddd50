"""
Compatibility rule engine: models, rule graph, comparison strategies and evaluation.
"""
