"""taskvault: project-isolated task store with conflict detection."""

__version__ = "1.0.0"
