"""Test suite for specflow."""
