"""
keypose test suite

Tests for the keypoint recognition and pose recovery pipeline.

Structure:
- unit/: Unit tests for individual components
- integration/: End-to-end tests on synthetic scenes
- fixtures/: Synthetic scene and image builders shared by the tests
"""
