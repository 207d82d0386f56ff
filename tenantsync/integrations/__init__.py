"""Integrations with external providers.

Credential lifecycle, provider clients, delta sync and lead classification.
Modules are imported directly (``tenantsync.integrations.oauth`` and so on).
"""
