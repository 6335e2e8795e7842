"""Playwright driver for the Elevate merchant portal."""
