"""
APRS Firehose - APRS-IS streaming ingestion client.

This package connects to an APRS-IS server, decodes the packet stream,
suppresses duplicate reports and stores every accepted frame in PostgreSQL.
"""

__version__ = "1.0.0"
__author__ = "APRS Firehose Team"
