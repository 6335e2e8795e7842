"""Shared helpers for the export job."""
