"""Test helpers shared by the suite (environment seeding)."""

from .environment import apply_required_test_environment

__all__ = ["apply_required_test_environment"]
