"""
Tests for the CRA Request Navigator backend.

Run from the repository root with: pytest
"""
