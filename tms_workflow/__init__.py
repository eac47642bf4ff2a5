"""Segment translation and review workflow core."""
