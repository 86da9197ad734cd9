"""
Initializer - loads the region catalog (placement and hourly pricing).
"""

import os
from typing import Dict, List, Optional

import aiofiles
import yaml
from loguru import logger

from ..models.enums import Region
from ..models.internal import RegionSpec
from .exceptions import UnknownRegionError


DEFAULT_REGIONS: Dict[str, Dict] = {
    "eu": {"datacenter": "fsn1-dc14", "server_type": "cx32", "hourly_rate": 0.0085},
    "us": {"datacenter": "ash-dc1", "server_type": "cpx31", "hourly_rate": 0.022},
}


class RegionCatalog:
    """Lookup of provider placement and hourly rate per region."""

    def __init__(self, regions: Dict[Region, RegionSpec]):
        self._regions = regions

    @classmethod
    def from_mapping(cls, raw: Dict[str, Dict]) -> "RegionCatalog":
        regions = {}
        for name, spec in raw.items():
            region = Region(name)
            regions[region] = RegionSpec(region=region, **spec)
        return cls(regions)

    @classmethod
    def default(cls) -> "RegionCatalog":
        return cls.from_mapping(DEFAULT_REGIONS)

    def get(self, region: Region) -> RegionSpec:
        try:
            return self._regions[Region(region)]
        except (KeyError, ValueError):
            raise UnknownRegionError(f"Unknown region: {region}")

    def hourly_rate(self, region: Region) -> float:
        return self.get(region).hourly_rate

    def regions(self) -> List[Region]:
        return list(self._regions)


class Initializer:
    """
    Loads startup configuration that is not environment-driven.
    """

    def __init__(self, region_file_path: Optional[str] = None):
        """
        Args:
            region_file_path: Path to regions.yaml (defaults to env var BLOOM_REGION_CONFIG_FILE)
        """
        self.region_file_path = region_file_path or os.getenv("BLOOM_REGION_CONFIG_FILE", "regions.yaml")
        self.region_catalog: Optional[RegionCatalog] = None
        logger.info(f"Initializer configured with region file: {self.region_file_path}")

    async def initialize(self) -> None:
        try:
            await self._load_region_config()
            logger.info("Initializer startup complete")
        except Exception as e:
            logger.error(f"Initialization failed: {str(e)}")
            raise

    async def _load_region_config(self) -> None:
        """Load region catalog from YAML file."""
        if not os.path.exists(self.region_file_path):
            logger.warning(f"Region config file not found: {self.region_file_path}")
            self.region_catalog = RegionCatalog.default()
            logger.info("Using default region configuration")
            return

        async with aiofiles.open(self.region_file_path, 'r') as file:
            content = await file.read()

        raw = yaml.safe_load(content) or {}
        # Merge over defaults so a partial file only overrides what it names
        merged = {name: dict(spec) for name, spec in DEFAULT_REGIONS.items()}
        for name, spec in raw.items():
            merged.setdefault(name, {}).update(spec or {})

        self.region_catalog = RegionCatalog.from_mapping(merged)
        logger.info(f"Loaded region configuration: {sorted(merged)}")

    def get_region_catalog(self) -> RegionCatalog:
        if not self.region_catalog:
            raise RuntimeError("Region catalog not loaded. Call initialize() first.")
        return self.region_catalog
