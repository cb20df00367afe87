"""Shared helpers used by every SWIFT tool."""
