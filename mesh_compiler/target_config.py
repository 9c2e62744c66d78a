"""Hardware target configuration for mesh backends."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class TargetConfig:
    """Hardware-specific constants for a target backend."""
    name: str = "metal_gpu"
    dialect: str = "metal"
    device_index: int = 0
    max_threadgroup_2d: int = 16
    max_threadgroup_3d_xy: int = 8
    max_threadgroup_3d_z: int = 2
    compile_options: tuple[str, ...] = field(default_factory=tuple)


METAL_GPU = TargetConfig()

CUDA_GPU = TargetConfig(name="cuda_gpu", dialect="cuda", max_threadgroup_3d_xy=16)

TARGETS: dict[str, TargetConfig] = {
    "metal": METAL_GPU,
    "cuda": CUDA_GPU,
}


def get_target(backend: str) -> TargetConfig:
    """Return the preset TargetConfig for a backend name ("metal" or "cuda")."""
    try:
        return TARGETS[backend]
    except KeyError:
        raise ValueError(f"Unknown backend '{backend}'. Available: {sorted(TARGETS)}") from None
