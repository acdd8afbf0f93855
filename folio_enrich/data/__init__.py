"""Fundamentals providers and their persistent caches."""
