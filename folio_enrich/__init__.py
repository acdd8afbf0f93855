"""Quota-aware fundamentals enrichment for Trading212 portfolios."""

__version__ = "0.1.0"
