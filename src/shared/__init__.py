"""
Shared infrastructure for the bridge: database pool and schema, the
audit logger, and credential handling.
"""
