"""Shared utilities (cache, correlation ids, partial results)."""
