"""Structured session events shared by the voice session engine and the token service."""
