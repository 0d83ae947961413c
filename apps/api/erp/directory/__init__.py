from erp.directory.client import (
    ClientDirectory,
    ClientRecord,
    SqlClientDirectory,
    SqlUserDirectory,
    UserDirectory,
    UserRecord,
)
from erp.directory.models import DirectoryClient, DirectoryUser

__all__ = [
    "ClientDirectory",
    "ClientRecord",
    "SqlClientDirectory",
    "SqlUserDirectory",
    "UserDirectory",
    "UserRecord",
    "DirectoryClient",
    "DirectoryUser",
]
