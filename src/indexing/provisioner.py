"""
Index Table Provisioner

Creates a brand-new index table pre-split into regions so the initial
build is spread across servers instead of landing on a single region.
"""

import logging
from typing import List, Optional, Sequence

from src.indexing.catalog import Catalog, IndexDescriptor, TableDescriptor
from src.indexing.exceptions import SetupError
from src.indexing.generator import IndexMutationGenerator
from src.storage.client import StorageClient

logger = logging.getLogger(__name__)


class IndexTableProvisioner:
    """
    Decides the region layout of a new index table and creates it.

    Args:
        storage: Storage client
        catalog: Table catalog
    """

    def __init__(self, storage: StorageClient, catalog: Catalog):
        self.storage = storage
        self.catalog = catalog

    @staticmethod
    def target_region_count(data_regions: int, split_above_regions: Optional[int] = None) -> int:
        """
        Number of regions the index table should start with.

        Args:
            data_regions: Region count of the data table
            split_above_regions: Only pre-split when the data table has more
                regions than this (always when None)

        Returns:
            Target region count (at least 1)
        """
        if split_above_regions is not None and data_regions <= split_above_regions:
            return 1
        return max(1, data_regions)

    def compute_split_points(
        self,
        table: TableDescriptor,
        index: IndexDescriptor,
        region_count: int,
        sampling_rate: Optional[int] = None,
        as_of: Optional[int] = None
    ) -> List[bytes]:
        """
        Choose region_count - 1 split points for the index table.

        With a sampling rate, every k-th data row (k = 100 / rate) is
        projected to its index key and evenly spaced keys of the sorted
        sample become split points. Without one the data table's split
        points are mirrored.
        """
        if region_count <= 1:
            return []

        admin = self.storage.get_admin()
        if not sampling_rate:
            return list(admin.split_points(table.physical_name))[:region_count - 1]

        if not 0 < sampling_rate <= 100:
            raise SetupError(f"Sampling rate must be between 1 and 100, got {sampling_rate}")

        step = max(1, round(100 / sampling_rate))
        generator = IndexMutationGenerator(table, index)
        sample: List[bytes] = []
        rows = self.storage.scan(table.physical_name, table.key_range(), as_of=as_of)
        for position, row in enumerate(rows):
            if position % step:
                continue
            expected = generator.expected_latest(row)
            if expected is not None:
                sample.append(expected.key)

        sample.sort()
        return self._evenly_spaced(sample, region_count)

    @staticmethod
    def _evenly_spaced(keys: Sequence[bytes], region_count: int) -> List[bytes]:
        if len(keys) < region_count:
            # one region per sampled key
            return sorted(set(keys[1:]))
        points = []
        for i in range(1, region_count):
            point = keys[(i * len(keys)) // region_count]
            if not points or point > points[-1]:
                points.append(point)
        return points

    def provision(
        self,
        table: TableDescriptor,
        index: IndexDescriptor,
        sampling_rate: Optional[int] = None,
        split_above_regions: Optional[int] = None,
        as_of: Optional[int] = None
    ) -> List[bytes]:
        """
        Create the physical index table if it does not exist yet.

        Local index tables mirror the data table's split points so each
        index region sits beside its data region.

        Returns:
            Split points the table was created with (empty if it existed)
        """
        admin = self.storage.get_admin()
        if admin.table_exists(index.physical_name):
            logger.debug(f"Index table {index.physical_name} already exists")
            return []

        data_splits = admin.split_points(table.physical_name)
        if index.is_local:
            split_points = list(data_splits)
        else:
            region_count = self.target_region_count(len(data_splits) + 1, split_above_regions)
            split_points = self.compute_split_points(table, index, region_count, sampling_rate, as_of)

        admin.create_table(index.physical_name, split_points)
        logger.info(
            f"Provisioned index table {index.physical_name} with {len(split_points) + 1} regions"
        )
        return split_points
