"""SafePatch: apply machine-generated unified diffs reversibly."""

__version__ = "0.1.0"
