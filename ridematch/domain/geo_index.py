"""
H3 Grid Spatial Index
=====================

Keeps the position of every *matchable* driver bucketed by H3 hexagonal cell
(default resolution 7, ~5.16 km² per cell).

Radius query
------------
1. Map the centre to its cell.
2. Walk ``grid_disk(centre_cell, k)`` where ``k = ceil(r / edge) + 1`` and
   ``edge`` is the average hexagon edge length at the resolution.  Adjacent
   cell centres are at least ~1.2 average edges apart anywhere on the globe,
   so the disk always covers the full search circle.
3. Apply the exact Haversine filter and sort ascending by distance.

Only when the disk would hold more cells than there are indexed drivers
(very large radii over a sparse index) are the occupied cells scanned
instead.  Empty buckets are dropped as drivers leave them, so that scan
never touches more cells than there are drivers.

Locking
-------
* One lock per cell.  A query holds each cell lock only while copying that
  cell's entries, so it never blocks writers on unrelated cells.
* Writers also hold a short directory lock guarding ``driver -> cell`` so a
  move between two cells is atomic with respect to other writers.

Complexity
----------
* insert / update / remove: O(1)
* query_radius: O(k² + m log m), m = drivers in the visited cells
"""

from __future__ import annotations

import math
import threading
from typing import NamedTuple, Optional

import h3

from .entities import Location


class NearbyDriver(NamedTuple):
    driver_id: str
    distance_km: float


class _Cell:
    __slots__ = ("lock", "entries")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: dict[str, Location] = {}


def cell_for(location: Location, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(location.latitude, location.longitude, resolution)


class GeoIndex:
    def __init__(self, resolution: int = 7):
        self.resolution = resolution
        self._edge_km = h3.average_hexagon_edge_length(resolution, unit="km")
        self._cells: dict[str, _Cell] = {}
        self._directory: dict[str, str] = {}
        self._directory_lock = threading.Lock()

    # ── Writes ────────────────────────────────────────────────────────

    def insert_or_update(self, driver_id: str, location: Location) -> None:
        new_cell_id = cell_for(location, self.resolution)
        with self._directory_lock:
            old_cell_id = self._directory.get(driver_id)
            new_cell = self._cell(new_cell_id)
            if old_cell_id is None or old_cell_id == new_cell_id:
                with new_cell.lock:
                    new_cell.entries[driver_id] = location
            else:
                old_cell = self._cells[old_cell_id]
                # fixed order avoids deadlock between crossing moves
                first, second = sorted(
                    [(old_cell_id, old_cell), (new_cell_id, new_cell)],
                    key=lambda pair: pair[0],
                )
                with first[1].lock, second[1].lock:
                    old_cell.entries.pop(driver_id, None)
                    new_cell.entries[driver_id] = location
                self._discard_if_empty(old_cell_id, old_cell)
            self._directory[driver_id] = new_cell_id

    def remove(self, driver_id: str) -> bool:
        """Drop *driver_id* from the index.  Returns False if absent."""
        with self._directory_lock:
            cell_id = self._directory.pop(driver_id, None)
            if cell_id is None:
                return False
            cell = self._cells[cell_id]
            with cell.lock:
                cell.entries.pop(driver_id, None)
            self._discard_if_empty(cell_id, cell)
        return True

    # ── Reads ─────────────────────────────────────────────────────────

    def query_radius(
        self,
        center: Location,
        radius_km: float,
        limit: Optional[int] = None,
    ) -> list[NearbyDriver]:
        """Drivers within *radius_km* of *center*, nearest first."""
        if radius_km < 0:
            raise ValueError("radius_km must be non-negative")

        found: dict[str, float] = {}
        for cell_id in self._cells_covering(center, radius_km):
            cell = self._cells.get(cell_id)
            if cell is None:
                continue
            with cell.lock:
                entries = list(cell.entries.items())
            for driver_id, location in entries:
                distance = center.distance_km(location)
                if distance <= radius_km:
                    found[driver_id] = distance

        ranked = sorted(
            (NearbyDriver(d, dist) for d, dist in found.items()),
            key=lambda n: (n.distance_km, n.driver_id),
        )
        if limit is not None:
            ranked = ranked[:limit]
        return ranked

    def location_of(self, driver_id: str) -> Optional[Location]:
        cell_id = self._directory.get(driver_id)
        if cell_id is None:
            return None
        cell = self._cells.get(cell_id)
        if cell is None:
            return None
        with cell.lock:
            return cell.entries.get(driver_id)

    def __contains__(self, driver_id: object) -> bool:
        return driver_id in self._directory

    def __len__(self) -> int:
        return len(self._directory)

    # ── Internals ─────────────────────────────────────────────────────

    def _cell(self, cell_id: str) -> _Cell:
        """Get or create a bucket.  Caller holds the directory lock."""
        cell = self._cells.get(cell_id)
        if cell is None:
            cell = self._cells[cell_id] = _Cell()
        return cell

    def _discard_if_empty(self, cell_id: str, cell: _Cell) -> None:
        """Caller holds the directory lock."""
        with cell.lock:
            if not cell.entries:
                self._cells.pop(cell_id, None)

    def _cells_covering(self, center: Location, radius_km: float) -> list[str]:
        k = math.ceil(radius_km / self._edge_km) + 1
        disk_size = 3 * k * (k + 1) + 1
        if disk_size > len(self._directory):
            return list(self._cells.keys())
        return list(h3.grid_disk(cell_for(center, self.resolution), k))
