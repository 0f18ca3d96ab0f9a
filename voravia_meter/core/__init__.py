"""
Core modules for Voravia Meter.

This package contains pricing, event emission, the daily rollup engine,
its scheduler, and the dashboard queries.
"""
