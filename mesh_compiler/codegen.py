"""Kernel source synthesis for the point and mesh kernels.

The mesh kernel source is fixed per dialect and does not depend on the
request; the point kernel source embeds the request's field and conversion
expressions. Expressions are injected as literal text: a malformed expression
only shows up later as a build failure.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass

from mesh_compiler import kernel_templates as kt
from mesh_compiler.domain import GeometryRequest, Topology

POINT_ENTRY_POINT = "computePoints"
MESH_ENTRY_POINT = "computeMesh"


@dataclass(frozen=True)
class KernelSource:
    """Kernel source code ready for compilation."""
    kind: str  # "points" or "mesh"
    entry_point: str
    dialect: str
    code: str

    @property
    def fingerprint(self) -> str:
        return hashlib.md5(self.code.encode()).hexdigest()


class KernelDialect(ABC):
    """Abstract interface for backend-specific kernel source.

    Each dialect fills the same two kernels for a different compiler:
    Metal Shading Language for the Metal backend, CUDA C for NVRTC.
    """

    name: str

    @abstractmethod
    def point_template(self):
        """Return the string.Template of the point kernel."""

    @abstractmethod
    def mesh_source(self) -> str:
        """Return the fixed mesh kernel source."""

    @abstractmethod
    def default_conversion(self, topology: Topology) -> str:
        """Return the conversion expression used when the request has none."""

    def field_aliases(self, topology: Topology) -> str:
        return kt.CLOSED_FIELD_ALIASES if topology is Topology.CLOSED else ""

    def conv_aliases(self, topology: Topology) -> str:
        return kt.CLOSED_CONV_ALIASES if topology is Topology.CLOSED else ""


class MetalDialect(KernelDialect):
    name = "metal"

    def point_template(self):
        return kt.METAL_POINT_TEMPLATE

    def mesh_source(self) -> str:
        return kt.METAL_MESH_SOURCE

    def default_conversion(self, topology: Topology) -> str:
        if topology is Topology.CLOSED:
            return kt.METAL_CLOSED_CONVERSION
        return kt.METAL_OPEN_CONVERSION


class CUDADialect(KernelDialect):
    name = "cuda"

    def point_template(self):
        return kt.CUDA_POINT_TEMPLATE

    def mesh_source(self) -> str:
        return kt.CUDA_MESH_SOURCE

    def default_conversion(self, topology: Topology) -> str:
        if topology is Topology.CLOSED:
            return kt.CUDA_CLOSED_CONVERSION
        return kt.CUDA_OPEN_CONVERSION


_DIALECTS: dict[str, KernelDialect] = {
    "metal": MetalDialect(),
    "cuda": CUDADialect(),
}


def get_dialect(name: str) -> KernelDialect:
    try:
        return _DIALECTS[name]
    except KeyError:
        raise ValueError(f"Unknown kernel dialect '{name}'. Available: {sorted(_DIALECTS)}") from None


def synthesize_point_source(request: GeometryRequest, dialect: KernelDialect) -> KernelSource:
    """Generate the per-request point kernel source.

    Args:
        request: Supplies the field expression, the optional conversion
            expression and the topology (which selects aliases and the
            default conversion).
        dialect: Target kernel language.

    Returns:
        KernelSource with entry point "computePoints".
    """
    field_expr = request.expr.strip() or kt.DEFAULT_FIELD_EXPR
    conv_expr = request.conv.strip() or dialect.default_conversion(request.topology)
    code = dialect.point_template().substitute(
        field_aliases=dialect.field_aliases(request.topology),
        field_expr=field_expr,
        conv_aliases=dialect.conv_aliases(request.topology),
        conv_expr=conv_expr,
    )
    return KernelSource(kind="points", entry_point=POINT_ENTRY_POINT, dialect=dialect.name, code=code)


def synthesize_mesh_source(dialect: KernelDialect) -> KernelSource:
    """Generate the fixed mesh kernel source (identical for every request)."""
    return KernelSource(kind="mesh", entry_point=MESH_ENTRY_POINT, dialect=dialect.name, code=dialect.mesh_source())
