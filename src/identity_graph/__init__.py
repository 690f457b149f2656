"""
Identity Graph Service

Stitches anonymous visitor sessions into canonical user identities from
event-sourced observations stored in ClickHouse.
"""

__version__ = "1.0.0"
