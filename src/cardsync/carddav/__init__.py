"""CardDAV sync: vCard codec, transport client, sync engine and conflict handling."""

from cardsync.carddav.client import AddressBook, CardDavClient, RemoteVCard, verify_connection
from cardsync.carddav.conflicts import ConflictResolver
from cardsync.carddav.export import ExportService
from cardsync.carddav.imports import ImportService
from cardsync.carddav.sync import CardDavSyncEngine, SyncResult, run_scheduled_sync

__all__ = [
    "AddressBook",
    "CardDavClient",
    "CardDavSyncEngine",
    "ConflictResolver",
    "ExportService",
    "ImportService",
    "RemoteVCard",
    "SyncResult",
    "run_scheduled_sync",
    "verify_connection",
]
