"""
Audit package: append-only access log writes and read-side analytics.
"""
