"""Checkpointed, human-reviewed workflow engine for proposal generation."""

__version__ = "0.1.0"
