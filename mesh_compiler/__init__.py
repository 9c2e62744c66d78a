from mesh_compiler.codegen import CUDADialect as CUDADialect
from mesh_compiler.codegen import KernelDialect as KernelDialect
from mesh_compiler.codegen import KernelSource as KernelSource
from mesh_compiler.codegen import MetalDialect as MetalDialect
from mesh_compiler.codegen import get_dialect as get_dialect
from mesh_compiler.codegen import synthesize_mesh_source as synthesize_mesh_source
from mesh_compiler.codegen import synthesize_point_source as synthesize_point_source
from mesh_compiler.domain import DomainDescriptor as DomainDescriptor
from mesh_compiler.domain import GeometryRequest as GeometryRequest
from mesh_compiler.domain import MeshLayout as MeshLayout
from mesh_compiler.domain import RequestError as RequestError
from mesh_compiler.domain import Topology as Topology
from mesh_compiler.target_config import CUDA_GPU as CUDA_GPU
from mesh_compiler.target_config import METAL_GPU as METAL_GPU
from mesh_compiler.target_config import TargetConfig as TargetConfig


def compile(request: GeometryRequest | dict, dialect: str = "metal") -> tuple[KernelSource, KernelSource]:
    """Synthesize (point_source, mesh_source) for a request.

    Args:
        request: A GeometryRequest or an in-memory request payload dict.
        dialect: Kernel language name ("metal" or "cuda").
    """
    if isinstance(request, dict):
        request = GeometryRequest.from_dict(request)
    target = get_dialect(dialect)
    return synthesize_point_source(request, target), synthesize_mesh_source(target)
