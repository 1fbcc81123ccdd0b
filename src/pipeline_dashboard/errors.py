"""Custom exception types for the ADO pipeline dashboard."""


class DashboardError(Exception):
    """Base exception for all recoverable dashboard errors."""


class ConfigurationError(DashboardError):
    """Raised when runtime configuration values or filter parameters are invalid."""


class AuthenticationError(DashboardError):
    """Raised when Azure DevOps authentication credentials are unavailable."""


class ApiError(DashboardError):
    """Raised when an Azure DevOps API request fails in a way callers must see."""


class ExportError(DashboardError):
    """Raised when the CSV export cannot be produced because aggregation failed."""
