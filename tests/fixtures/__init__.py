"""Synthetic data builders for the tests."""
