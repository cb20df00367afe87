"""
SWIFT — Region Catalog
=======================
Grazing-allotment polygons and their administrative hierarchy.

The hierarchy (state → national forest → ranger district → allotment)
exists only in attribute columns; every :class:`RegionPolygon` handed to
the pipeline is independent, and allotment results are never summed into
their district or forest.

Default attribute columns::

    State_Name   state
    National_F   national forest
    ADMIN_ORG_   ranger district
    ALLOTMENT_   allotment name

Usage::

    catalog = RegionCatalog.from_file(Path("allotments.shp"), crs=grid.crs)
    for district in catalog.districts("Tonto National Forest"):
        regions = catalog.allotment_regions(district)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import geopandas as gpd
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from shared.python.exceptions import InputValidationError
from shared.python.validators import Validators

logger = logging.getLogger("swift.regions")

VECTOR_EXTENSIONS = [".shp", ".geojson", ".json", ".gpkg"]


@dataclass(frozen=True)
class RegionPolygon:
    """A reduction domain in the analysis grid CRS.

    Attributes:
        region_id: Identifier used in every AreaRecord for this region.
        geometry: Polygon or MultiPolygon.
        attributes: Catalog attributes (state, forest, …), informational only.
    """

    region_id: str
    geometry: BaseGeometry
    attributes: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.geometry is None or self.geometry.is_empty:
            raise InputValidationError(f"Region '{self.region_id}' has an empty geometry.")
        if self.geometry.geom_type not in ("Polygon", "MultiPolygon"):
            raise InputValidationError(
                f"Region '{self.region_id}' must be a polygon, got {self.geometry.geom_type}."
            )

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return self.geometry.bounds


@dataclass(frozen=True)
class HierarchyColumns:
    """Attribute column names of each hierarchy level."""

    state: str = "State_Name"
    forest: str = "National_F"
    district: str = "ADMIN_ORG_"
    allotment: str = "ALLOTMENT_"

    def as_list(self) -> list[str]:
        return [self.state, self.forest, self.district, self.allotment]


class RegionCatalog:
    """Equality-filter queries over an allotment layer.

    Args:
        gdf: Allotment polygons with the hierarchy columns.
        columns: Column names of each hierarchy level.

    Raises:
        ColumnNotFoundError: If a hierarchy column is missing.
    """

    def __init__(self, gdf: gpd.GeoDataFrame, columns: HierarchyColumns | None = None) -> None:
        self.columns = columns or HierarchyColumns()
        Validators.assert_columns_exist(gdf, self.columns.as_list())
        self._gdf = gdf

    @classmethod
    def from_file(
        cls,
        path: Path,
        crs: Any = None,
        columns: HierarchyColumns | None = None,
    ) -> "RegionCatalog":
        """Read an allotment layer, reprojecting to *crs* when given."""
        Validators.assert_file_exists(path)
        Validators.assert_supported_extension(path, VECTOR_EXTENSIONS)
        gdf = gpd.read_file(path)
        if crs is not None:
            if gdf.crs is None:
                raise InputValidationError(f"'{Path(path).name}' has no CRS; cannot reproject.")
            gdf = gdf.to_crs(crs)
        logger.info("Loaded %d region polygon(s) from %s.", len(gdf), path)
        return cls(gdf, columns)

    # ------------------------------------------------------------------
    # Hierarchy navigation
    # ------------------------------------------------------------------

    def _distinct(self, column: str, where: tuple[str, str] | None = None) -> list[str]:
        rows = self._gdf
        if where is not None:
            rows = rows[rows[where[0]] == where[1]]
        return sorted(str(v) for v in rows[column].dropna().unique())

    def states(self) -> list[str]:
        return self._distinct(self.columns.state)

    def forests(self, state: str) -> list[str]:
        return self._distinct(self.columns.forest, (self.columns.state, state))

    def districts(self, forest: str) -> list[str]:
        return self._distinct(self.columns.district, (self.columns.forest, forest))

    def allotments(self, district: str) -> list[str]:
        return self._distinct(self.columns.allotment, (self.columns.district, district))

    # ------------------------------------------------------------------
    # Region construction
    # ------------------------------------------------------------------

    def region(self, allotment: str) -> RegionPolygon:
        """Return the polygon of one allotment.

        Rows sharing the allotment name are dissolved into one region.

        Raises:
            InputValidationError: If no row has that allotment name.
        """
        rows = self._gdf[self._gdf[self.columns.allotment] == allotment]
        if rows.empty:
            raise InputValidationError(f"Allotment '{allotment}' is not in the catalog.")
        first = rows.iloc[0]
        attributes = {
            level: first[column]
            for level, column in zip(("state", "forest", "district", "allotment"), self.columns.as_list())
        }
        return RegionPolygon(allotment, unary_union(list(rows.geometry)), attributes)

    def allotment_regions(self, district: str) -> list[RegionPolygon]:
        """Every allotment of *district* as an independent region."""
        return [self.region(name) for name in self.allotments(district)]

    def __len__(self) -> int:
        return len(self._gdf)

    def __repr__(self) -> str:
        return f"<RegionCatalog {len(self)} polygon(s)>"
