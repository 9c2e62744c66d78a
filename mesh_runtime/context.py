"""Compute context: the owned resource handle injected into the pipeline.

Holds one backend (device context + queue), its target config and the
build manager with the cached mesh program. Nothing here is module-global;
create one context per process (or per test) and pass it around.
"""

from __future__ import annotations

import logging

from mesh_compiler.codegen import get_dialect
from mesh_compiler.target_config import TargetConfig, get_target
from mesh_runtime.backend import Backend
from mesh_runtime.build import ProgramBuildManager

logger = logging.getLogger(__name__)


class ComputeContext:
    """A backend plus the state shared by every request on it."""

    def __init__(self, backend: Backend, config: TargetConfig):
        self.backend = backend
        self.config = config
        self.builder = ProgramBuildManager(backend, get_dialect(config.dialect))
        logger.info("Compute context on %s: %s", backend.name, ", ".join(backend.devices))

    async def warm_up(self) -> None:
        """Build the mesh program now instead of on the first request."""
        await self.builder.mesh_program()

    def close(self) -> None:
        self.builder.close()
        self.backend.synchronize()

    def __enter__(self) -> ComputeContext:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def create_backend(name: str, config: TargetConfig) -> Backend:
    if name == "metal":
        try:
            from mesh_runtime.metal_backend import MetalBackend
        except ImportError as e:
            raise RuntimeError(
                f"Metal backend unavailable ({e}). Install with: pip install '.[metal]'"
            ) from e

        return MetalBackend(config)
    if name == "cuda":
        from mesh_runtime.cuda_backend import CUDABackend

        return CUDABackend(config)
    raise ValueError(f"Unknown backend '{name}'")


def create_context(backend: str = "metal", config: TargetConfig | None = None) -> ComputeContext:
    """Create a ComputeContext for a named backend ("metal" or "cuda").

    Args:
        backend: Backend name; selects the preset TargetConfig when config is None.
        config: Optional override (e.g. a different device_index).
    """
    config = config or get_target(backend)
    return ComputeContext(create_backend(backend, config), config)
