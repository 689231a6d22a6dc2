"""Data models for notes, reference edges and events."""
