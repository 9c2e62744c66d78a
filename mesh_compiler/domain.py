"""Request data model: domain descriptors, topology, and derived mesh layout.

A request samples a surface over a regular (u, v) grid. Each axis is a
DomainDescriptor; the topology says whether the first axis wraps around
(closed, cylindrical surfaces) or is bounded (open, general two-axis surfaces).
All buffer sizes and dispatch grids derive from MeshLayout so the compiler,
the runtime and the numpy reference agree on one set of numbers.
"""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any

FLOAT_SIZE = 4
POINT_FLOATS = 3
VERTICES_PER_TRIANGLE = 3
TRIANGLES_PER_QUAD = 2

# Params block layout: {axis0Min, axis0Step, axis1Min, axis1Step}, little-endian float32.
PARAMS_FORMAT = "<4f"


class RequestError(ValueError):
    """Malformed geometry request payload."""


class Topology(Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class DomainDescriptor:
    """Sampling interval for one parametric axis."""
    min: float
    max: float
    res: int

    def __post_init__(self):
        if isinstance(self.res, bool) or not isinstance(self.res, int) or self.res < 1:
            raise RequestError(f"res must be an integer >= 1, got {self.res!r}")
        for name in ("min", "max"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise RequestError(f"{name} must be a finite number, got {value!r}")

    @property
    def step(self) -> float:
        return (self.max - self.min) / self.res

    @staticmethod
    def from_dict(d: Any, axis: str = "axis") -> DomainDescriptor:
        if not isinstance(d, dict):
            raise RequestError(f"{axis}: expected an object with min/max/res, got {type(d).__name__}")
        missing = [k for k in ("min", "max", "res") if k not in d]
        if missing:
            raise RequestError(f"{axis}: missing {', '.join(missing)}")
        try:
            return DomainDescriptor(min=d["min"], max=d["max"], res=d["res"])
        except RequestError as e:
            raise RequestError(f"{axis}: {e}") from None

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max, "res": self.res}


# Second axis used when a request only carries one descriptor.
UNIT_DOMAIN = DomainDescriptor(min=0.0, max=1.0, res=1)


@dataclass(frozen=True)
class MeshLayout:
    """Sizes of every grid and buffer for one request.

    Closed topology wraps the first axis: its point grid has res0 columns and
    quads in the last column reuse column 0. Open topology has res0 + 1 columns.
    """
    quad_cols: int
    quad_rows: int
    closed: bool

    @staticmethod
    def for_domains(u: DomainDescriptor, v: DomainDescriptor, topology: Topology) -> MeshLayout:
        return MeshLayout(quad_cols=u.res, quad_rows=v.res, closed=topology is Topology.CLOSED)

    @property
    def point_cols(self) -> int:
        return self.quad_cols if self.closed else self.quad_cols + 1

    @property
    def point_rows(self) -> int:
        return self.quad_rows + 1

    @property
    def point_stride(self) -> int:
        return self.point_cols

    @property
    def num_points(self) -> int:
        return self.point_cols * self.point_rows

    @property
    def num_quads(self) -> int:
        return self.quad_cols * self.quad_rows

    @property
    def num_triangles(self) -> int:
        return self.num_quads * TRIANGLES_PER_QUAD

    @property
    def num_vertices(self) -> int:
        return self.num_triangles * VERTICES_PER_TRIANGLE

    @property
    def vertex_floats(self) -> int:
        return self.num_vertices * POINT_FLOATS

    @property
    def point_bytes(self) -> int:
        return self.num_points * POINT_FLOATS * FLOAT_SIZE

    @property
    def vertex_bytes(self) -> int:
        return self.vertex_floats * FLOAT_SIZE

    @property
    def point_grid(self) -> tuple[int, int]:
        return (self.point_cols, self.point_rows)

    @property
    def mesh_grid(self) -> tuple[int, int, int]:
        return (self.quad_cols, self.quad_rows, TRIANGLES_PER_QUAD)

    @property
    def mesh_scalars(self) -> tuple[int, int, int, int]:
        """Scalar arguments of the mesh kernel: (quadCols, quadRows, pointStride, closed)."""
        return (self.quad_cols, self.quad_rows, self.point_stride, int(self.closed))


@dataclass(frozen=True)
class GeometryRequest:
    """One surface request: two axes, a field expression and an optional conversion."""
    u: DomainDescriptor
    v: DomainDescriptor
    expr: str = ""
    conv: str = ""
    topology: Topology = Topology.OPEN

    @property
    def layout(self) -> MeshLayout:
        return MeshLayout.for_domains(self.u, self.v, self.topology)

    def pack_params(self) -> bytes:
        """Pack the 16-byte params block read by the point kernel."""
        return struct.pack(PARAMS_FORMAT, self.u.min, self.u.step, self.v.min, self.v.step)

    @staticmethod
    def from_dict(d: Any) -> GeometryRequest:
        """Parse a request payload.

        Closed (cylindrical) form: {"phi": D, "z": D, "expr": str}.
        Open form: {"u": D, "v": D, "expr": str, "conv": str}.
        An explicit "topology" key overrides the inferred one.
        """
        if not isinstance(d, dict):
            raise RequestError(f"request must be a JSON object, got {type(d).__name__}")

        if "phi" in d or "z" in d:
            names, topology = ("phi", "z"), Topology.CLOSED
        else:
            names, topology = ("u", "v"), Topology.OPEN

        if "topology" in d:
            try:
                topology = Topology(d["topology"])
            except ValueError:
                raise RequestError(f"topology must be 'open' or 'closed', got {d['topology']!r}") from None

        present = [n for n in names if n in d]
        if not present:
            raise RequestError(f"request needs at least one domain ({' or '.join(names)})")
        u = DomainDescriptor.from_dict(d[names[0]], names[0]) if names[0] in d else UNIT_DOMAIN
        v = DomainDescriptor.from_dict(d[names[1]], names[1]) if names[1] in d else UNIT_DOMAIN

        expr = d.get("expr") or ""
        conv = d.get("conv") or ""
        for key, value in (("expr", expr), ("conv", conv)):
            if not isinstance(value, str):
                raise RequestError(f"{key} must be a string, got {type(value).__name__}")

        return GeometryRequest(u=u, v=v, expr=expr, conv=conv, topology=topology)

    def to_dict(self) -> dict:
        if self.topology is Topology.CLOSED:
            d = {"phi": self.u.to_dict(), "z": self.v.to_dict()}
        else:
            d = {"u": self.u.to_dict(), "v": self.v.to_dict()}
        d["expr"] = self.expr
        if self.conv:
            d["conv"] = self.conv
        d["topology"] = self.topology.value
        return d
