"""Shared utilities: retry policies, deduplication, logging, passcodes."""
