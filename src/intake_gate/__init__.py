"""Durable, rate-limited intake queue for agents acting on throttled upstream APIs."""

__version__ = "0.1.0"
