"""Serializable execution state and checkpoints."""
