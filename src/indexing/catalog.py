"""
Table and Index Catalog

Metadata for data tables, tenant views and the secondary indexes defined
on them. Tenant views share the physical table of their base table and
resolve to a key prefix; view indexes share one physical index table and
are told apart by a view index id.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.indexing.encoding import ColumnType, encode_key, tenant_prefix
from src.indexing.exceptions import SetupError, TableNotFoundError
from src.storage.model import KeyRange

logger = logging.getLogger(__name__)

DEFAULT_FAMILY = b"0"


class TransactionProvider(Enum):
    """Transaction managers a transactional table can use."""
    TEPHRA = "TEPHRA"
    OMID = "OMID"

    @property
    def supports_local_index(self) -> bool:
        return self is not TransactionProvider.OMID


class IndexType(Enum):
    """Physical placement of an index."""
    GLOBAL = "GLOBAL"
    LOCAL = "LOCAL"


class IndexState(Enum):
    """Lifecycle state of an index."""
    BUILDING = "BUILDING"
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


class NullHandling(Enum):
    """Which rows get an index row when indexed values are null."""
    INCLUDE = "INCLUDE"
    SKIP_IF_ANY_NULL = "SKIP_IF_ANY_NULL"
    SKIP_IF_ALL_NULL = "SKIP_IF_ALL_NULL"


@dataclass(frozen=True)
class ColumnDef:
    """A column of a data table."""

    name: str
    column_type: ColumnType = ColumnType.VARCHAR
    family: bytes = DEFAULT_FAMILY

    @property
    def qualifier(self) -> bytes:
        return self.name.encode("utf-8")

    @property
    def ref(self) -> Tuple[bytes, bytes]:
        return (self.family, self.qualifier)


def _lpad(value: str, width: str, fill: str) -> str:
    return value.rjust(int(width), fill)


TRANSFORMS: Dict[str, Callable[..., str]] = {
    "upper": lambda value: value.upper(),
    "lower": lambda value: value.lower(),
    "lpad": _lpad,
    "suffix": lambda value, suffix: value + suffix,
}


@dataclass(frozen=True)
class IndexedExpression:
    """
    An indexed column with an optional chain of string transforms.

    Transforms are written "name" or "name:arg1:arg2", e.g. "lpad:8:x".
    """

    column: str
    transforms: Tuple[str, ...] = ()

    def apply(self, value):
        if value is None or not self.transforms:
            return value
        result = str(value)
        for transform in self.transforms:
            name, *args = transform.split(":")
            func = TRANSFORMS.get(name)
            if func is None:
                raise SetupError(f"Unknown index expression function: {name}")
            result = func(result, *args)
        return result

    def result_type(self, column_type: ColumnType) -> ColumnType:
        return ColumnType.VARCHAR if self.transforms else column_type


@dataclass(frozen=True)
class TableDescriptor:
    """A data table or a tenant view over one."""

    schema: str
    name: str
    pk_columns: Tuple[ColumnDef, ...]
    columns: Tuple[ColumnDef, ...] = ()
    transactional: bool = False
    transaction_provider: Optional[TransactionProvider] = None
    multi_tenant: bool = False
    ttl_ms: Optional[int] = None
    max_lookback_ms: int = 0
    tenant_id: Optional[str] = None
    base_table: Optional[str] = None
    physical: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name

    @property
    def physical_name(self) -> str:
        return self.physical or self.full_name

    @property
    def is_view(self) -> bool:
        return self.base_table is not None

    def column(self, name: str) -> ColumnDef:
        for column in self.pk_columns + self.columns:
            if column.name == name:
                return column
        raise SetupError(f"Column {name} not found in {self.full_name}")

    def is_pk(self, name: str) -> bool:
        return any(c.name == name for c in self.pk_columns)

    def row_key(self, *pk_values) -> bytes:
        """Encode a data row key; tenant views prepend their tenant id."""
        values = list(pk_values)
        if self.tenant_id is not None and len(values) == len(self.pk_columns) - 1:
            values = [self.tenant_id] + values
        return encode_key(values, [c.column_type for c in self.pk_columns])

    def key_range(self) -> KeyRange:
        """Rows visible through this table: a tenant's prefix for views."""
        if self.tenant_id is not None:
            return KeyRange.for_prefix(tenant_prefix(self.tenant_id))
        return KeyRange()


@dataclass(frozen=True)
class IndexDescriptor:
    """A secondary index over a data table or view."""

    schema: str
    name: str
    data_table: str
    indexed: Tuple[IndexedExpression, ...]
    covered: Tuple[str, ...] = ()
    index_type: IndexType = IndexType.GLOBAL
    null_handling: NullHandling = NullHandling.INCLUDE
    tenant_id: Optional[str] = None
    view_index_id: Optional[int] = None
    physical: Optional[str] = None
    state: IndexState = IndexState.BUILDING

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name

    @property
    def physical_name(self) -> str:
        return self.physical or self.full_name

    @property
    def is_local(self) -> bool:
        return self.index_type is IndexType.LOCAL


def local_index_table_name(data_physical_name: str) -> str:
    return f"_LOCAL_IDX_{data_physical_name}"


def view_index_table_name(data_physical_name: str) -> str:
    return f"_IDX_{data_physical_name}"


@dataclass
class Catalog:
    """In-memory registry of tables, views and indexes, keyed by tenant."""

    _tables: Dict[Tuple[Optional[str], str], TableDescriptor] = field(default_factory=dict)
    _indexes: Dict[Tuple[Optional[str], str], IndexDescriptor] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock)

    def register_table(self, table: TableDescriptor) -> TableDescriptor:
        if table.transaction_provider is not None and not table.transactional:
            table = replace(table, transactional=True)
        if table.transactional and table.transaction_provider is None:
            table = replace(table, transaction_provider=TransactionProvider.TEPHRA)
        with self._lock:
            self._tables[(table.tenant_id, table.full_name)] = table
        logger.debug(f"Registered table {table.full_name} (tenant={table.tenant_id})")
        return table

    def create_view(self, tenant_id: str, view_name: str, base: TableDescriptor,
                    schema: str = "") -> TableDescriptor:
        """
        Register a tenant view over a multi-tenant table.

        Raises:
            SetupError: If the base table is not multi-tenant
        """
        if not base.multi_tenant:
            raise SetupError(f"Cannot create tenant view on non multi-tenant table {base.full_name}")
        view = replace(
            base,
            schema=schema,
            name=view_name,
            tenant_id=tenant_id,
            base_table=base.full_name,
            physical=base.physical_name
        )
        return self.register_table(view)

    def register_index(self, index: IndexDescriptor) -> IndexDescriptor:
        table = self.get_table_by_full_name(index.data_table, index.tenant_id)
        for expression in index.indexed:
            table.column(expression.column)
        for name in index.covered:
            table.column(name)

        if index.physical is None:
            if index.is_local:
                index = replace(index, physical=local_index_table_name(table.physical_name))
            elif table.is_view:
                view_id = index.view_index_id
                if view_id is None:
                    view_id = self._next_view_index_id(table.physical_name)
                index = replace(
                    index,
                    physical=view_index_table_name(table.physical_name),
                    view_index_id=view_id
                )
        with self._lock:
            self._indexes[(index.tenant_id, index.full_name)] = index
        logger.debug(f"Registered index {index.full_name} on {index.data_table}")
        return index

    def get_table(self, schema: str, name: str, tenant_id: Optional[str] = None) -> TableDescriptor:
        full_name = f"{schema}.{name}" if schema else name
        return self.get_table_by_full_name(full_name, tenant_id)

    def get_table_by_full_name(self, full_name: str, tenant_id: Optional[str] = None) -> TableDescriptor:
        with self._lock:
            table = self._tables.get((tenant_id, full_name)) or self._tables.get((None, full_name))
        if table is None:
            raise TableNotFoundError(f"Table not found: {full_name} (tenant={tenant_id})")
        return table

    def get_index(self, schema: str, name: str, tenant_id: Optional[str] = None) -> IndexDescriptor:
        full_name = f"{schema}.{name}" if schema else name
        with self._lock:
            index = self._indexes.get((tenant_id, full_name)) or self._indexes.get((None, full_name))
        if index is None:
            raise TableNotFoundError(f"Index not found: {full_name} (tenant={tenant_id})")
        return index

    def indexes_for(self, table: TableDescriptor) -> List[IndexDescriptor]:
        with self._lock:
            return [
                index for index in self._indexes.values()
                if index.data_table == table.full_name and index.tenant_id == table.tenant_id
            ]

    def set_index_state(self, index: IndexDescriptor, state: IndexState) -> IndexDescriptor:
        updated = replace(index, state=state)
        with self._lock:
            self._indexes[(index.tenant_id, index.full_name)] = updated
        logger.info(f"Index {index.full_name} is now {state.value}")
        return updated

    def _next_view_index_id(self, physical_name: str) -> int:
        used = [
            index.view_index_id for index in self._indexes.values()
            if index.physical_name == view_index_table_name(physical_name)
            and index.view_index_id is not None
        ]
        return max(used, default=0) + 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Catalog":
        """
        Build a catalog from a plain mapping, e.g. a parsed YAML file.

        Expected keys are "tables", "views" and "indexes"; see
        config/catalog.example.yaml for the layout.

        Raises:
            SetupError: On malformed definitions
        """
        catalog = cls()
        try:
            for entry in data.get("tables", []):
                provider = entry.get("transaction_provider")
                catalog.register_table(TableDescriptor(
                    schema=entry.get("schema", ""),
                    name=entry["name"],
                    pk_columns=tuple(_column_from_dict(c) for c in entry["pk"]),
                    columns=tuple(_column_from_dict(c) for c in entry.get("columns", [])),
                    transactional=bool(entry.get("transactional", False)),
                    transaction_provider=TransactionProvider(provider) if provider else None,
                    multi_tenant=bool(entry.get("multi_tenant", False)),
                    ttl_ms=entry.get("ttl_ms"),
                    max_lookback_ms=int(entry.get("max_lookback_ms", 0)),
                ))
            for entry in data.get("views", []):
                base = catalog.get_table_by_full_name(entry["base"])
                catalog.create_view(entry["tenant_id"], entry["name"], base, entry.get("schema", ""))
            for entry in data.get("indexes", []):
                catalog.register_index(IndexDescriptor(
                    schema=entry.get("schema", ""),
                    name=entry["name"],
                    data_table=entry["data_table"],
                    indexed=tuple(_expression_from_dict(e) for e in entry["indexed"]),
                    covered=tuple(entry.get("covered", [])),
                    index_type=IndexType(entry.get("type", IndexType.GLOBAL.value)),
                    null_handling=NullHandling(entry.get("null_handling", NullHandling.INCLUDE.value)),
                    tenant_id=entry.get("tenant_id"),
                ))
        except (KeyError, TypeError, ValueError) as e:
            raise SetupError(f"Invalid catalog definition: {e}")
        return catalog


def _column_from_dict(entry: Any) -> ColumnDef:
    if isinstance(entry, str):
        return ColumnDef(entry)
    return ColumnDef(
        name=entry["name"],
        column_type=ColumnType(entry.get("type", ColumnType.VARCHAR.value)),
        family=str(entry.get("family", DEFAULT_FAMILY.decode())).encode("utf-8"),
    )


def _expression_from_dict(entry: Any) -> IndexedExpression:
    if isinstance(entry, str):
        return IndexedExpression(entry)
    return IndexedExpression(entry["column"], tuple(entry.get("transforms", [])))
