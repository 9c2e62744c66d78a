"""Profiler: measure end-to-end geometry request time."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

from mesh_compiler.domain import GeometryRequest
from mesh_runtime.pipeline import SurfacePipeline


@dataclass
class ProfileResult:
    """Profiling result with timing and iteration count."""
    total_ms: float
    iterations: int
    triangles: int


def profile(
    pipeline: SurfacePipeline,
    request: GeometryRequest,
    warmup: int = 1,
    iterations: int = 5,
) -> ProfileResult:
    """Profile a request end to end (build, dispatch, readback).

    Warmup runs also build the cached mesh program, so the measured
    iterations only pay for the per-request point program.
    """
    async def _run() -> ProfileResult:
        for _ in range(warmup):
            await pipeline.generate(request)

        triangles = 0
        start = time.perf_counter()
        for _ in range(iterations):
            geometry = await pipeline.generate(request)
            triangles = geometry.num_triangles
        end = time.perf_counter()

        return ProfileResult(
            total_ms=(end - start) / iterations * 1000,
            iterations=iterations,
            triangles=triangles,
        )

    return asyncio.run(_run())
