"""
Core modules for LLM Broker.

This package contains request scheduling, caching, resilience,
usage accounting, and deterministic replay.
"""
