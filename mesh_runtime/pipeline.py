"""Dispatch pipeline: one geometry request, from expression to float arrays.

Stages (strictly sequential, each consumes memory the previous produced):
    1. build the mesh program (cached per context) and the point program
    2. allocate params / points / vertices / normals
    3. write params
    4. computePoints over the point grid      -> release point kernel, params
    5. computeMesh over quadCols x quadRows x 2 -> release mesh kernel, points
    6. read vertices                            -> release vertices
    7. read normals                             -> release normals
    8. decode little-endian float32

Design trade-offs:
    - Every stage awaits its completion signal before the next is enqueued,
      even though the queue is in-order. The price is one host round trip per
      stage; in exchange a failure is attributed to the exact stage and
      buffers can be released as soon as their last consumer finished.

    - Reject on failure: build failures, launch/transfer errors and task
      cancellation all propagate to the caller. The BufferManager scope and
      the finally block release buffers, kernels and the point program on
      every exit path. No partial geometry is ever returned.

    - The mesh program is shared by concurrent requests on one context; point
      programs and buffers are per request.
"""

from __future__ import annotations

import asyncio
import logging
import struct
import time
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from mesh_compiler.codegen import MESH_ENTRY_POINT, POINT_ENTRY_POINT
from mesh_compiler.domain import FLOAT_SIZE, PARAMS_FORMAT, GeometryRequest
from mesh_runtime.backend import AccessMode, Kernel, Program
from mesh_runtime.buffer import BufferManager
from mesh_runtime.context import ComputeContext
from mesh_runtime.errors import BuildFailure, DeviceOperationFailure

logger = logging.getLogger(__name__)

PARAMS_BYTES = struct.calcsize(PARAMS_FORMAT)


class PipelineState(Enum):
    IDLE = "idle"
    PROGRAMS_BUILDING = "programs_building"
    PROGRAMS_READY = "programs_ready"
    BUILD_FAILED = "build_failed"
    PARAMS_WRITING = "params_writing"
    POINTS_COMPUTING = "points_computing"
    MESH_COMPUTING = "mesh_computing"
    VERTICES_READING = "vertices_reading"
    NORMALS_READING = "normals_reading"
    DONE = "done"
    FAILED = "failed"


_TERMINAL_STATES = {PipelineState.DONE, PipelineState.FAILED, PipelineState.BUILD_FAILED}


@dataclass
class PipelineRun:
    """State history of one request through the pipeline."""
    request: GeometryRequest
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])
    error: BaseException | None = None

    @property
    def state(self) -> PipelineState:
        return self.history[-1]

    def advance(self, state: PipelineState) -> None:
        if self.state in _TERMINAL_STATES:
            raise RuntimeError(f"Pipeline run already finished in state {self.state.value}")
        logger.debug("Pipeline: %s -> %s", self.state.value, state.value)
        self.history.append(state)

    def fail(self, error: BaseException) -> None:
        self.error = error
        if self.state is not PipelineState.BUILD_FAILED:
            self.history.append(PipelineState.FAILED)


@dataclass
class Geometry:
    """Flat vertex and normal arrays (consecutive x, y, z triples)."""
    vertices: np.ndarray
    normals: np.ndarray

    @property
    def num_triangles(self) -> int:
        return len(self.vertices) // 9

    def to_dict(self) -> dict:
        return {"vertices": self.vertices.tolist(), "normals": self.normals.tolist()}


def decode_floats(raw: bytes) -> np.ndarray:
    """Decode little-endian float32 bytes into a flat float32 array."""
    if len(raw) % FLOAT_SIZE != 0:
        raise DeviceOperationFailure("decode", f"{len(raw)} bytes is not a multiple of the float size")
    return np.frombuffer(raw, dtype="<f4").astype(np.float32)


class SurfacePipeline:
    """Runs geometry requests on a ComputeContext."""

    def __init__(self, context: ComputeContext):
        self._context = context

    async def generate(self, request: GeometryRequest, run: PipelineRun | None = None) -> Geometry:
        """Run one request through every stage.

        Args:
            request: The parsed request.
            run: Optional PipelineRun to record state transitions into.

        Returns:
            Geometry with res0 * res1 * 18 floats per array.

        Raises:
            BuildFailure: a device failed to compile either program.
            DeviceOperationFailure: a transfer or launch was rejected.
        """
        run = run if run is not None else PipelineRun(request)
        backend = self._context.backend
        builder = self._context.builder
        layout = request.layout
        point_program: Program | None = None
        kernels: list[Kernel] = []
        start = time.perf_counter()

        def create_kernel(program: Program, entry_point: str) -> Kernel:
            kernel = backend.create_kernel(program, entry_point)
            kernels.append(kernel)
            return kernel

        def release_kernel(kernel: Kernel) -> None:
            backend.release_kernel(kernel)
            kernels.remove(kernel)

        try:
            run.advance(PipelineState.PROGRAMS_BUILDING)
            try:
                mesh_program = await builder.mesh_program()
                point_program = await builder.point_program(request)
            except BuildFailure:
                run.advance(PipelineState.BUILD_FAILED)
                raise
            run.advance(PipelineState.PROGRAMS_READY)

            async with BufferManager(backend) as buffers:
                params = buffers.allocate("params", PARAMS_BYTES, AccessMode.READ_ONLY)
                points = buffers.allocate("points", layout.point_bytes, AccessMode.READ_WRITE)
                vertices = buffers.allocate("vertices", layout.vertex_bytes, AccessMode.WRITE_ONLY)
                normals = buffers.allocate("normals", layout.vertex_bytes, AccessMode.WRITE_ONLY)

                run.advance(PipelineState.PARAMS_WRITING)
                await buffers.write(params, request.pack_params()).wait()

                run.advance(PipelineState.POINTS_COMPUTING)
                point_kernel = create_kernel(point_program, POINT_ENTRY_POINT)
                await buffers.launch(
                    point_kernel, layout.point_grid, [points, params, layout.point_cols, layout.point_rows],
                ).wait()
                logger.debug("Points computed (%d).", layout.num_points)
                release_kernel(point_kernel)
                buffers.release(params)

                run.advance(PipelineState.MESH_COMPUTING)
                mesh_kernel = create_kernel(mesh_program, MESH_ENTRY_POINT)
                await buffers.launch(
                    mesh_kernel, layout.mesh_grid, [points, vertices, normals, *layout.mesh_scalars],
                ).wait()
                logger.debug("Mesh computed (%d triangles).", layout.num_triangles)
                release_kernel(mesh_kernel)
                buffers.release(points)

                run.advance(PipelineState.VERTICES_READING)
                vertex_bytes = await buffers.read(vertices).wait()
                buffers.release(vertices)

                run.advance(PipelineState.NORMALS_READING)
                normal_bytes = await buffers.read(normals).wait()
                buffers.release(normals)

            geometry = Geometry(vertices=decode_floats(vertex_bytes), normals=decode_floats(normal_bytes))
            if len(geometry.vertices) != layout.vertex_floats or len(geometry.normals) != layout.vertex_floats:
                raise DeviceOperationFailure(
                    "decode",
                    f"expected {layout.vertex_floats} floats, got {len(geometry.vertices)} vertices "
                    f"and {len(geometry.normals)} normals",
                )
            run.advance(PipelineState.DONE)
            logger.info(
                "Geometry ready: %d triangles in %.1f ms",
                layout.num_triangles, (time.perf_counter() - start) * 1000,
            )
            return geometry
        except asyncio.CancelledError as e:
            run.fail(e)
            logger.warning("Geometry request cancelled in state %s", run.history[-2].value)
            raise
        except Exception as e:
            run.fail(e)
            logger.error("Geometry request failed: %s", e)
            raise
        finally:
            for kernel in list(kernels):
                release_kernel(kernel)
            if point_program is not None:
                builder.release(point_program)


def generate_geometry(context: ComputeContext, request: GeometryRequest | dict) -> Geometry:
    """Blocking wrapper: parse the request if needed and run it to completion."""
    if isinstance(request, dict):
        request = GeometryRequest.from_dict(request)
    return asyncio.run(SurfacePipeline(context).generate(request))
