"""Azure DevOps pipeline execution dashboard."""

__version__ = "0.1.0"
