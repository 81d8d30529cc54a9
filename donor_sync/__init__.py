"""
donor_sync - Bidirectional sync between platform donors and Google Contacts.

Keeps donor records consistent with a managed contact group in a connected
Google account using per-side content hashes for change detection.
"""

__version__ = "0.1.0"
