"""Checkpointed workflow execution for proposal generation.

Why not LangGraph?
~~~~~~~~~~~~~~~~~~
The engine needs exactly four things from a graph runtime: pure routing over a
single state document, a durable snapshot after every committed step, a single
suspension point for human review, and dependency-aware invalidation when an
approved artifact is edited. All of it fits in a small executor over SQLite
(`engine.py` + `repository.py`), which keeps the state document a plain
dataclass and the checkpoint schema under our own Alembic migrations.
"""
