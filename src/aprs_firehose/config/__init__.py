"""Configuration loading for the firehose service."""
