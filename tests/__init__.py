"""
ICR Test Suite.

Comprehensive tests for the Infinite Context Runtime system including:
- Unit tests for individual components
- Integration tests for subsystem interactions
- Acceptance tests for PRD requirements
"""
