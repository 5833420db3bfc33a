import logging
from dataclasses import dataclass
from typing import Optional
from shared import config
from shared.coordinator import BookingCoordinator
from shared.database import Database
from shared.event_handler import ChangeNotifier, EventHandler, LoggingNotifier
from shared.inventory import RideInventory
from shared.ledger import RequestLedger
from shared.profiles import ProfileDirectory
from shared.storage import MemoryStorage, Storage

logger = logging.getLogger(__name__)


@dataclass
class Components:
    storage: Storage
    notifier: ChangeNotifier
    inventory: RideInventory
    ledger: RequestLedger
    coordinator: BookingCoordinator
    profiles: ProfileDirectory
    db: Optional[Database] = None

    async def startup(self):
        await self.storage.connect()

    async def shutdown(self):
        await self.storage.disconnect()
        if isinstance(self.notifier, EventHandler):
            self.notifier.close()


def create_storage(backend: str = config.STORAGE_BACKEND, db: Optional[Database] = None) -> Storage:
    if backend == "memory":
        return MemoryStorage()
    if backend == "postgres":
        from shared.pg_storage import PostgresStorage
        return PostgresStorage(db or Database(config.POSTGRES_CONN_STRING))
    raise ValueError(f"Unknown STORAGE_BACKEND {backend!r}; expected 'postgres' or 'memory'")


def create_notifier(service_name: str, db: Optional[Database] = None) -> ChangeNotifier:
    if not config.REDIS_HOST:
        return LoggingNotifier()
    return EventHandler(
        db=db,
        stream=config.EVENT_STREAM,
        consumer_group=f"{service_name}_group",
        service_name=service_name,
        redis_host=config.REDIS_HOST,
        redis_port=config.REDIS_PORT,
        redis_db=config.REDIS_DB,
    )


def build_components(service_name: str, storage: Optional[Storage] = None, notifier: Optional[ChangeNotifier] = None) -> Components:
    db = None
    if storage is None:
        if config.STORAGE_BACKEND == "postgres":
            db = Database(config.POSTGRES_CONN_STRING)
        storage = create_storage(config.STORAGE_BACKEND, db)
    if notifier is None:
        notifier = create_notifier(service_name, db)
    logger.info(f"{service_name} using {type(storage).__name__} and {type(notifier).__name__}")
    return Components(
        storage=storage,
        notifier=notifier,
        inventory=RideInventory(storage, notifier),
        ledger=RequestLedger(storage, notifier),
        coordinator=BookingCoordinator(storage, notifier),
        profiles=ProfileDirectory(storage),
        db=db,
    )
