"""
Docket API - Cases, Triggers and Events
=======================================

Read-only backend for a legal docket calendar:
1. Verifies API bearer tokens (signature, age ceiling, stored-credential revocation)
2. Assembles Cases, Triggers and Events with their assignees, calendars,
   dashboard owners and categories, batching every relationship lookup
3. Correlates Triggers/Events with Cases where no foreign key links them
"""

__version__ = "2.0.0"
