"""Test infrastructure: fakes and helpers, not tests."""
