"""
bizcore - entitlement and feature resolution for the multi-tenant business platform.
"""
