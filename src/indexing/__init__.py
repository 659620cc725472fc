"""
Indexing Module for the Index Builder

Builds secondary index rows for existing data and verifies that every
index row matches its source data row at one read timestamp.

Main components:
- catalog: Tables, tenant views and index definitions
- generator: Index mutations derived from data row history
- comparer: Index row classification (valid, missing, invalid, expired)
- mapper: Per-region build and verification (direct API or server pushed)
- repository: Output and result tables of verifying runs
- orchestrator: IndexTool, planning and running whole jobs
- provisioner: Pre-split creation of new index tables

Usage:
    from src.indexing import Catalog, IndexTool, IndexToolConfig, VerifyType

    tool = IndexTool(storage, catalog)
    status = tool.run(IndexToolConfig(
        schema="S", data_table="T", index_table="IDX", verify_type=VerifyType.BEFORE
    ))
    rebuilt = tool.get_counter("REBUILT_INDEX_ROW_COUNT")
"""

from src.indexing.catalog import (
    Catalog,
    ColumnDef,
    IndexDescriptor,
    IndexedExpression,
    IndexState,
    IndexType,
    NullHandling,
    TableDescriptor,
    TransactionProvider,
)
from src.indexing.comparer import IndexRowComparer, VerificationOutcome, VerificationResult
from src.indexing.encoding import ColumnType
from src.indexing.exceptions import (
    IndexToolError,
    SetupError,
    TableNotFoundError,
    UnsupportedFeatureError,
)
from src.indexing.generator import IndexMutationGenerator
from src.indexing.mapper import (
    BuildRequest,
    DisableLoggingType,
    MapperStrategy,
    RegionIndexBuilder,
    VerifyType,
)
from src.indexing.orchestrator import IndexTool, IndexToolConfig
from src.indexing.provisioner import IndexTableProvisioner
from src.indexing.repository import OutputRecord, OutputRepository, ResultRecord, ResultRepository

__all__ = [
    "BuildRequest",
    "Catalog",
    "ColumnDef",
    "ColumnType",
    "DisableLoggingType",
    "IndexDescriptor",
    "IndexMutationGenerator",
    "IndexRowComparer",
    "IndexState",
    "IndexTableProvisioner",
    "IndexTool",
    "IndexToolConfig",
    "IndexToolError",
    "IndexType",
    "IndexedExpression",
    "MapperStrategy",
    "NullHandling",
    "OutputRecord",
    "OutputRepository",
    "RegionIndexBuilder",
    "ResultRecord",
    "ResultRepository",
    "SetupError",
    "TableDescriptor",
    "TableNotFoundError",
    "TransactionProvider",
    "UnsupportedFeatureError",
    "VerificationOutcome",
    "VerificationResult",
    "VerifyType",
]

__version__ = "1.0.0"
