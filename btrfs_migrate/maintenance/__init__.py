"""Snapshot rotation and recurring system maintenance."""
