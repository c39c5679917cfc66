"""
Core modules for AI Gateway.

This package contains cache key derivation, single-flight coordination,
quota accounting, the subscription lifecycle and the request audit log.
"""
