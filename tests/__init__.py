# twostep Test Suite
"""
Test suite including:
- Unit tests
- Integration tests
- Security tests (invalid inputs, races, enumeration)

Run with: pytest
"""
