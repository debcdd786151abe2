"""Closed-loop CoAP load generator: virtual clients driven through timed concurrency phases."""

__version__ = "0.1.0"
