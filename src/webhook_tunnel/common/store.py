import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from loguru import logger
from pydantic import BaseModel

from webhook_tunnel.common.models import (
    Connection,
    Endpoint,
    Event,
    ForwardingDestination,
    ForwardingExecution,
    ForwardingRule,
)


class Table(str, Enum):
    EVENTS = "events"
    ENDPOINTS = "endpoints"
    CONNECTIONS = "connections"
    FORWARDING_RULES = "forwarding_rules"
    FORWARDING_DESTINATIONS = "forwarding_destinations"
    FORWARDING_EXECUTIONS = "forwarding_executions"


TABLE_MODELS: Dict[Table, Type[BaseModel]] = {
    Table.EVENTS: Event,
    Table.ENDPOINTS: Endpoint,
    Table.CONNECTIONS: Connection,
    Table.FORWARDING_RULES: ForwardingRule,
    Table.FORWARDING_DESTINATIONS: ForwardingDestination,
    Table.FORWARDING_EXECUTIONS: ForwardingExecution,
}

IMMUTABLE_TABLES = {Table.FORWARDING_EXECUTIONS}


class StoreError(Exception):
    """Raised when the durable store cannot serve a request."""


class Store(ABC):
    """Insert/update-by-id/find operations over the logical tables."""

    @abstractmethod
    async def insert(self, table: Table, record: BaseModel) -> BaseModel:
        pass

    @abstractmethod
    async def update(self, table: Table, record_id: str, **fields: Any) -> Optional[BaseModel]:
        pass

    @abstractmethod
    async def get(self, table: Table, record_id: str) -> Optional[BaseModel]:
        pass

    @abstractmethod
    async def find(self, table: Table, **criteria: Any) -> List[BaseModel]:
        pass


class MemoryStore(Store):
    """Process-local store, used by the dev server and tests."""

    def __init__(self):
        self._tables: Dict[Table, Dict[str, BaseModel]] = {table: {} for table in Table}
        self._lock = asyncio.Lock()

    def _check_model(self, table: Table, record: BaseModel) -> None:
        expected = TABLE_MODELS[table]
        if not isinstance(record, expected):
            raise StoreError(
                f"Table {table.value} stores {expected.__name__}, got {type(record).__name__}"
            )

    async def insert(self, table: Table, record: BaseModel) -> BaseModel:
        self._check_model(table, record)
        async with self._lock:
            rows = self._tables[table]
            record_id = getattr(record, "id")
            if record_id in rows:
                raise StoreError(f"Duplicate id {record_id} in {table.value}")
            rows[record_id] = record
        logger.debug(f"Inserted {record_id} into {table.value}")
        return record

    async def update(self, table: Table, record_id: str, **fields: Any) -> Optional[BaseModel]:
        if table in IMMUTABLE_TABLES:
            raise StoreError(f"Records in {table.value} are immutable")
        async with self._lock:
            rows = self._tables[table]
            current = rows.get(record_id)
            if current is None:
                return None
            # Round-trip through validation so enum/nested values are coerced
            data = current.model_dump()
            data.update(fields)
            updated = TABLE_MODELS[table].model_validate(data)
            rows[record_id] = updated
        logger.debug(f"Updated {record_id} in {table.value}: {sorted(fields)}")
        return updated

    async def get(self, table: Table, record_id: str) -> Optional[BaseModel]:
        return self._tables[table].get(record_id)

    async def find(self, table: Table, **criteria: Any) -> List[BaseModel]:
        return [
            record
            for record in list(self._tables[table].values())
            if all(getattr(record, key) == value for key, value in criteria.items())
        ]
