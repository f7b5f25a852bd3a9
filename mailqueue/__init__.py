"""Asynchronous email delivery pipeline: queue, delivery worker and campaigns."""

__version__ = "0.1.0"
