"""Core configuration, errors and money helpers."""
