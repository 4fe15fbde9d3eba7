"""Client side: log client, tenant administration, HTTP transport."""

from .admin import TenantAdmin
from .client import DecryptedLog, LogClient
from .remote import RemoteLogServer

__all__ = ["TenantAdmin", "DecryptedLog", "LogClient", "RemoteLogServer"]
