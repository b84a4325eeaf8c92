"""
Core modules for AI Credit Meter.

This package contains pricing, rate limiting, retry and the metered
operation executor.
"""
