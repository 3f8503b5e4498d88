"""Orchestration core for chatdelta: retries, parallel execution, sessions and metrics."""
