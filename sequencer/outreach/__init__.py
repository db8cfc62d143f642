"""Sequence engine: enrollment, lifecycle, step execution, scheduling."""
