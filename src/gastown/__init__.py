"""Gas Town: work dispatch and lifecycle coordination for agent sessions."""

__version__ = "0.3.0"
