"""Bundled state machine definitions."""
