"""Backend access used by the controllers."""

from .audit_logger import AuditLogger
from .backend import DashboardClient
from .http_client import HttpClient

__all__ = [
    "AuditLogger",
    "DashboardClient",
    "HttpClient",
]
