"""
Decision context package.

Resolves the requesting user's role and membership status through the
user directory (HTTP client guarded by a circuit breaker).
"""
