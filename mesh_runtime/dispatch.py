"""Dispatch strategies: map a logical kernel grid to threadgroups/blocks.

Grids are rounded up to whole threadgroups; the kernels bounds-check against
their logical grid size, so any rounding is safe.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from mesh_compiler.target_config import TargetConfig

Dim3 = tuple[int, int, int]


def _pad_grid(grid: Sequence[int]) -> Dim3:
    if not 1 <= len(grid) <= 3:
        raise ValueError(f"Grid must have 1-3 dimensions, got {len(grid)}")
    if any(g < 1 for g in grid):
        raise ValueError(f"Grid dimensions must be >= 1, got {tuple(grid)}")
    dims = tuple(int(g) for g in grid) + (1,) * (3 - len(grid))
    return dims  # type: ignore[return-value]


def _ceil_div(a: int, b: int) -> int:
    return (a + b - 1) // b


class DispatchStrategy(ABC):
    """Abstract interface for computing dispatch parameters of a grid."""

    @abstractmethod
    def compute_dispatch(self, grid: Sequence[int]) -> tuple[Dim3, Dim3]:
        """Return ((groups_x, groups_y, groups_z), (tpg_x, tpg_y, tpg_z))."""


class TiledDispatchStrategy(DispatchStrategy):
    """Fixed tile sizes from TargetConfig: square 2D tiles, flat 3D tiles.

    Used for Metal threadgroups and CUDA blocks alike; only the tile limits
    in TargetConfig differ between the two.
    """

    def __init__(self, config: TargetConfig):
        self._config = config

    def compute_dispatch(self, grid: Sequence[int]) -> tuple[Dim3, Dim3]:
        width, height, depth = _pad_grid(grid)
        if depth == 1:
            tpg_x = min(self._config.max_threadgroup_2d, width)
            tpg_y = min(self._config.max_threadgroup_2d, height)
            tpg_z = 1
        else:
            tpg_x = min(self._config.max_threadgroup_3d_xy, width)
            tpg_y = min(self._config.max_threadgroup_3d_xy, height)
            tpg_z = min(self._config.max_threadgroup_3d_z, depth)
        groups = (_ceil_div(width, tpg_x), _ceil_div(height, tpg_y), _ceil_div(depth, tpg_z))
        return groups, (tpg_x, tpg_y, tpg_z)
