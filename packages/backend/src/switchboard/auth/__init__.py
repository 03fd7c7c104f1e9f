"""Caller identity.

Agents, webhook bridges and operators authenticate with an API key in the
x-api-key header. Keys are stored as salted SHA-256 hashes and resolve to
a CurrentIdentity that routes can inspect for scopes.
"""
