"""
Persistence Layer
=================

The supervision framework needs only four row operations from its store:
insert, update-by-id, select-with-filter-ordering-and-limit and
delete-by-filter. ``PersistenceLayer`` names them; two implementations
are provided:

- ``SupabasePersistence``  -- production, backed by the supabase-py client
- ``InMemoryPersistence``  -- tests and local runs, no I/O

Rows are plain dictionaries. Timestamps are stored as UTC ISO-8601 strings.

Logical tables:
    agent_errors, agent_alerts, dead_letter_queue, agent_health, agent_metrics
"""

import copy
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from supabase import Client, create_client

from unit_talk.services.exceptions import DatabaseError, MissingCredentialsError

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

AGENT_ERRORS_TABLE = "agent_errors"
AGENT_ALERTS_TABLE = "agent_alerts"
DEAD_LETTER_TABLE = "dead_letter_queue"
AGENT_HEALTH_TABLE = "agent_health"
AGENT_METRICS_TABLE = "agent_metrics"

ALL_TABLES = (
    AGENT_ERRORS_TABLE,
    AGENT_ALERTS_TABLE,
    DEAD_LETTER_TABLE,
    AGENT_HEALTH_TABLE,
    AGENT_METRICS_TABLE,
)


# =============================================================================
# Interface
# =============================================================================

class PersistenceLayer(ABC):
    """
    Abstract row store used by the error handler, DLQ and health monitor.

    Filter arguments map column name to value:
        eq   -- column == value
        in_  -- column in values
        lte  -- column <= value
        gte  -- column >= value
        lt   -- column < value
    """

    @abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert *row* and return the stored row."""
        pass

    @abstractmethod
    async def update(
        self, table: str, row_id: str, values: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Update the row with ``id == row_id``; return it, or None if missing."""
        pass

    @abstractmethod
    async def select(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        lte: Optional[Dict[str, Any]] = None,
        gte: Optional[Dict[str, Any]] = None,
        lt: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return rows matching every filter, optionally ordered and limited."""
        pass

    @abstractmethod
    async def delete(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        lt: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Delete rows matching every filter and return how many were removed."""
        pass

    async def ping(self) -> bool:
        """Return True if the store is reachable."""
        try:
            await self.select(AGENT_HEALTH_TABLE, limit=1)
            return True
        except Exception as exc:
            logger.warning("Persistence ping failed: %s", exc)
            return False


# =============================================================================
# Supabase implementation
# =============================================================================

def create_supabase_client() -> Client:
    """Create a Supabase client from ``SUPABASE_URL`` / ``SUPABASE_SERVICE_ROLE_KEY``."""
    url = os.getenv("SUPABASE_URL", SUPABASE_URL or "")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", SUPABASE_SERVICE_KEY or "")
    if not url or not key:
        raise MissingCredentialsError(
            service="Supabase",
            required_keys=["SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"],
        )
    client = create_client(url, key)
    logger.info("Supabase client initialized for agent persistence")
    return client


class SupabasePersistence(PersistenceLayer):
    """
    ``PersistenceLayer`` backed by the supabase-py query builder.

    Args:
        client: Supabase client instance (optional, for dependency injection/testing).
                When omitted one is created from the environment on first use.
    """

    def __init__(self, client: Optional[Client] = None):
        self.client = client

    def _get_client(self) -> Client:
        if self.client is None:
            self.client = create_supabase_client()
        return self.client

    @staticmethod
    def _apply_filters(query: Any, eq=None, in_=None, lte=None, gte=None, lt=None) -> Any:
        for column, value in (eq or {}).items():
            query = query.eq(column, value)
        for column, values in (in_ or {}).items():
            query = query.in_(column, list(values))
        for column, value in (lte or {}).items():
            query = query.lte(column, value)
        for column, value in (gte or {}).items():
            query = query.gte(column, value)
        for column, value in (lt or {}).items():
            query = query.lt(column, value)
        return query

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._get_client().table(table).insert(row).execute()
        except Exception as e:
            raise DatabaseError(
                message=f"Insert failed: {e}", operation="insert", table=table,
                original_error=e,
            ) from e

        if response.data and len(response.data) > 0:
            return response.data[0]
        return dict(row)

    async def update(
        self, table: str, row_id: str, values: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        try:
            response = self._get_client().table(table).update(values).eq(
                "id", str(row_id)
            ).execute()
        except Exception as e:
            raise DatabaseError(
                message=f"Update failed: {e}", operation="update", table=table,
                context={"id": str(row_id)}, original_error=e,
            ) from e

        if response.data and len(response.data) > 0:
            return response.data[0]
        return None

    async def select(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        lte: Optional[Dict[str, Any]] = None,
        gte: Optional[Dict[str, Any]] = None,
        lt: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        try:
            query = self._get_client().table(table).select("*")
            query = self._apply_filters(query, eq=eq, in_=in_, lte=lte, gte=gte, lt=lt)
            if order_by:
                query = query.order(order_by, desc=descending)
            if limit is not None:
                query = query.limit(limit)
            response = query.execute()
        except Exception as e:
            raise DatabaseError(
                message=f"Select failed: {e}", operation="select", table=table,
                original_error=e,
            ) from e

        return list(response.data or [])

    async def delete(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        lt: Optional[Dict[str, Any]] = None,
    ) -> int:
        try:
            query = self._get_client().table(table).delete()
            query = self._apply_filters(query, eq=eq, in_=in_, lt=lt)
            response = query.execute()
        except Exception as e:
            raise DatabaseError(
                message=f"Delete failed: {e}", operation="delete", table=table,
                original_error=e,
            ) from e

        return len(response.data or [])


# =============================================================================
# In-memory implementation
# =============================================================================

def _comparable(value: Any) -> Any:
    """Parse ISO-8601 strings so timestamps compare chronologically."""
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


class InMemoryPersistence(PersistenceLayer):
    """
    In-memory row store for tests and local runs.

    Rows are deep-copied on the way in and out so callers never share
    mutable state with the store. Set ``fail_with`` to an exception to
    simulate an unreachable database.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {name: [] for name in ALL_TABLES}
        self.fail_with: Optional[Exception] = None

    def _check_available(self, operation: str, table: str) -> None:
        if self.fail_with is not None:
            raise DatabaseError(
                message=f"{operation.capitalize()} failed: {self.fail_with}",
                operation=operation,
                table=table,
                original_error=self.fail_with,
            )

    def rows(self, table: str) -> List[Dict[str, Any]]:
        """Return a copy of every row in *table* (test helper)."""
        return copy.deepcopy(self.tables.get(table, []))

    @staticmethod
    def _matches(row: Dict[str, Any], eq=None, in_=None, lte=None, gte=None, lt=None) -> bool:
        for column, value in (eq or {}).items():
            if row.get(column) != value:
                return False
        for column, values in (in_ or {}).items():
            if row.get(column) not in list(values):
                return False
        for column, value in (lte or {}).items():
            current = row.get(column)
            if current is None or _comparable(current) > _comparable(value):
                return False
        for column, value in (gte or {}).items():
            current = row.get(column)
            if current is None or _comparable(current) < _comparable(value):
                return False
        for column, value in (lt or {}).items():
            current = row.get(column)
            if current is None or _comparable(current) >= _comparable(value):
                return False
        return True

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self._check_available("insert", table)
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid4()))
        self.tables.setdefault(table, []).append(stored)
        return copy.deepcopy(stored)

    async def update(
        self, table: str, row_id: str, values: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        self._check_available("update", table)
        for row in self.tables.get(table, []):
            if str(row.get("id")) == str(row_id):
                row.update(copy.deepcopy(values))
                return copy.deepcopy(row)
        return None

    async def select(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        lte: Optional[Dict[str, Any]] = None,
        gte: Optional[Dict[str, Any]] = None,
        lt: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self._check_available("select", table)
        matched = [
            row for row in self.tables.get(table, [])
            if self._matches(row, eq=eq, in_=in_, lte=lte, gte=gte, lt=lt)
        ]
        if order_by:
            # Rows missing the column sort last, as NULLs do in Postgres ASC.
            present = [r for r in matched if r.get(order_by) is not None]
            missing = [r for r in matched if r.get(order_by) is None]
            present.sort(key=lambda r: _comparable(r[order_by]), reverse=descending)
            matched = missing + present if descending else present + missing
        if limit is not None:
            matched = matched[:limit]
        return copy.deepcopy(matched)

    async def delete(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        lt: Optional[Dict[str, Any]] = None,
    ) -> int:
        self._check_available("delete", table)
        rows = self.tables.get(table, [])
        keep = [r for r in rows if not self._matches(r, eq=eq, in_=in_, lt=lt)]
        removed = len(rows) - len(keep)
        self.tables[table] = keep
        return removed
