"""
Test suite for the unification layer.

Usage:
    pytest tests/ -v
    pytest tests/ -v -m integration
"""
