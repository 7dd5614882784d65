"""Shared type aliases and label helpers."""
