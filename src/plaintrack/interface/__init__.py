"""
Interface module - External interfaces to plaintrack.

This module contains:
- cli.py: Command-line interface
"""
