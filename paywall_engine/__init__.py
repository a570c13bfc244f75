"""Subscription lifecycle and paywall decision engine."""

__version__ = "1.0.0"
