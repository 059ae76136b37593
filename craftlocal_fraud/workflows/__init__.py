"""Workflows: checkout review, trust bookkeeping, admin review."""
