"""
Core modules for Bandwidth Guard.

This package contains traffic accounting, quota enforcement, persistence
batching, container discovery and the reset/expiry scheduler.
"""
