"""
Entity Store Client: typed async CRUD over the document collections.

Each call is one independent round-trip run in a worker thread, so it is a
suspension point for the event loop. No logic beyond request shaping: fields
go out through the entity's ``to_wire`` and documents come back through
``from_wire``.
"""
import asyncio
import logging
from typing import Optional, List, Dict, Any

from .errors import NotFound
from .schema import EntityKind, ENTITY_TYPES

logger = logging.getLogger(__name__)

# Default list order per collection
DEFAULT_SORT = {
    EntityKind.COLUMN: "order",
    EntityKind.LEAD: "order",
    EntityKind.CUSTOMER: "name",
}


class EntityCollection:
    """CRUD for one entity kind."""

    def __init__(self, kind: EntityKind, backend, collection_id: str, limit: int = 1000):
        self.kind = kind
        self.backend = backend
        self.collection_id = collection_id
        self.limit = limit
        self.entity_type = ENTITY_TYPES[kind]

    async def list(self, sort: Optional[str] = None, limit: Optional[int] = None) -> List[Any]:
        docs = await asyncio.to_thread(
            self.backend.list_documents,
            self.collection_id,
            sort or DEFAULT_SORT[self.kind],
            limit or self.limit,
        )
        return [self.entity_type.from_wire(doc) for doc in docs]

    async def get(self, entity_id: str):
        doc = await asyncio.to_thread(self.backend.get_document, self.collection_id, entity_id)
        return self.entity_type.from_wire(doc)

    async def create(self, fields: Dict[str, Any]):
        doc = await asyncio.to_thread(
            self.backend.create_document, self.collection_id, self.entity_type.to_wire(fields)
        )
        return self.entity_type.from_wire(doc)

    async def update(self, entity_id: str, fields: Dict[str, Any]):
        doc = await asyncio.to_thread(
            self.backend.update_document,
            self.collection_id,
            entity_id,
            self.entity_type.to_wire(fields),
        )
        return self.entity_type.from_wire(doc)

    async def delete(self, entity_id: str) -> None:
        """Delete; an already-absent entity counts as deleted."""
        try:
            await asyncio.to_thread(self.backend.delete_document, self.collection_id, entity_id)
        except NotFound:
            logger.debug(f"{self.kind.value} {entity_id} already deleted")


class EntityStoreClient:
    """The three board collections over one document backend."""

    def __init__(self, backend, collection_ids: Optional[Dict[EntityKind, str]] = None, limit: int = 1000):
        collection_ids = collection_ids or {kind: f"{kind.value}s" for kind in EntityKind}
        self.backend = backend
        self._collections = {
            kind: EntityCollection(kind, backend, collection_ids[kind], limit=limit)
            for kind in EntityKind
        }

    @property
    def columns(self) -> EntityCollection:
        return self._collections[EntityKind.COLUMN]

    @property
    def leads(self) -> EntityCollection:
        return self._collections[EntityKind.LEAD]

    @property
    def customers(self) -> EntityCollection:
        return self._collections[EntityKind.CUSTOMER]

    def collection(self, kind: EntityKind) -> EntityCollection:
        return self._collections[kind]

    @classmethod
    def from_config(cls, cfg, http=None) -> "EntityStoreClient":
        """Build a client for ``cfg.backend`` ("appwrite" or "sqlite")."""
        ids = {EntityKind(kind): coll for kind, coll in cfg.collection_ids().items()}
        if cfg.backend == "sqlite":
            from .local_store import SqliteDocuments
            backend = SqliteDocuments(cfg.sqlite_path)
        elif cfg.backend == "appwrite":
            from .appwrite import AppwriteHttp, AppwriteDocuments
            backend = AppwriteDocuments(http or AppwriteHttp.from_config(cfg), cfg.database_id)
        else:
            raise ValueError(f"Unknown backend: {cfg.backend}")
        return cls(backend, ids, limit=cfg.list_limit)
