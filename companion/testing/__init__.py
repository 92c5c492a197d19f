"""Test doubles for the sync core."""

from .fakes import FakeRemote, ManualScheduler

__all__ = ["FakeRemote", "ManualScheduler"]
