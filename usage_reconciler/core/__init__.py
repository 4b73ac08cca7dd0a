"""
Core modules for usage reconciler.

This package contains pricing, billing detection, transcript matching,
reconstruction, audits and audit scheduling.
"""
