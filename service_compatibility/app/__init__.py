"""
Compatibility Service package for the PC Configurator.

This package decides whether a set of hardware components can form a
working PC build, and narrows a category's catalog to the products that fit
an in-progress build. It provides:

- app.main: API surface for build, pair and candidate checks, rule export
  and cache invalidation.
- app.checker: Async orchestration of catalog lookups, caching and evaluation.
- app.rules: Rule graph snapshot, comparison strategies and the rule engine.
- app.cache: Rule graph snapshot cache and Redis-backed result cache.
- app.persistence: PostgreSQL catalog/rule store, in-memory catalog and
  rule export file store.

Guidelines:
- Rules are data; evaluation interprets them against an immutable snapshot.
- A lookup failure is never treated as compatible.
- Call the invalidate endpoint after any change to rules or allowed values.
"""
