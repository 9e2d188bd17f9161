"""Re-entrant execution engine driven by the artifacts found on disk.

The engine plans chunks, submits jobs under locks, waits on waves of them and
walks per-unit action tables. Workflows built on it live in ``checkflow.task``.
"""
