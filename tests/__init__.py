"""
Test suite for chromatrial.

This package contains unit tests and integration tests for:
- Stimulus generation and sampling policies
- Session tracking and eviction
- The append-only results log
- The trial engine
- The HTTP boundary
"""
