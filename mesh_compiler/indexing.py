"""Mesh indexing scheme: grid -> quads -> triangles -> flat buffers.

These functions are the host-side twin of the index helpers emitted into the
kernel sources (see kernel_templates.py). They accept Python ints or numpy
integer arrays, so the same arithmetic drives both the scalar property tests
and the vectorized reference assembly below.
"""

from __future__ import annotations

import numpy as np

from mesh_compiler.domain import MeshLayout

# Corner offsets (di, dj) of the two triangles of quad (i, j).
# Fixed diagonal split from (i, j) to (i+1, j+1).
TRIANGLE_CORNERS: tuple[tuple[tuple[int, int], ...], ...] = (
    ((0, 0), (1, 0), (1, 1)),
    ((0, 0), (1, 1), (0, 1)),
)


def point_index(i, j, stride, closed: bool = False):
    """Index of grid point (i, j). Closed grids wrap i around the stride."""
    if closed:
        return (i % stride) + j * stride
    return i + j * stride


def quad_index(i, j, stride_quads):
    return i + j * stride_quads


def triangle_index(i, j, t, stride_quads):
    """Index of triangle t (0 or 1) of quad (i, j)."""
    return quad_index(i, j, stride_quads) * 2 + t


def triangle_corners(i, j, t) -> tuple[tuple[int, int], ...]:
    return tuple((i + di, j + dj) for di, dj in TRIANGLE_CORNERS[t])


def face_normal(v0: np.ndarray, v1: np.ndarray, v2: np.ndarray) -> np.ndarray:
    """normalize((v1 - v0) x (v2 - v0)) along the last axis."""
    n = np.cross(np.asarray(v1) - v0, np.asarray(v2) - v0)
    length = np.linalg.norm(n, axis=-1, keepdims=True)
    with np.errstate(invalid="ignore", divide="ignore"):
        return n / length


def triangle_point_indices(layout: MeshLayout) -> np.ndarray:
    """Point indices of every triangle corner, ordered by triangle index.

    Returns an int array of shape (num_triangles, 3).
    """
    j, i, t = np.meshgrid(
        np.arange(layout.quad_rows), np.arange(layout.quad_cols), np.arange(2), indexing="ij",
    )
    ti = triangle_index(i, j, t, layout.quad_cols).ravel()
    corners = np.empty((layout.num_triangles, 3), dtype=np.int64)
    for k in range(3):
        di = np.where(t == 0, TRIANGLE_CORNERS[0][k][0], TRIANGLE_CORNERS[1][k][0])
        dj = np.where(t == 0, TRIANGLE_CORNERS[0][k][1], TRIANGLE_CORNERS[1][k][1])
        corners[ti, k] = point_index(i + di, j + dj, layout.point_stride, layout.closed).ravel()
    return corners


def assemble_mesh(points: np.ndarray, layout: MeshLayout) -> tuple[np.ndarray, np.ndarray]:
    """Numpy reference of the mesh kernel.

    Args:
        points: float32 array of shape (num_points, 3) or flat (num_points * 3,).
        layout: MeshLayout the points were sampled on.

    Returns:
        (vertices, normals), both flat float32 arrays of layout.vertex_floats.
    """
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 3)
    if pts.shape[0] != layout.num_points:
        raise ValueError(f"Expected {layout.num_points} points, got {pts.shape[0]}")

    tri = pts[triangle_point_indices(layout)]  # (num_triangles, 3, 3)
    normals = face_normal(tri[:, 0], tri[:, 1], tri[:, 2]).astype(np.float32)
    normals = np.repeat(normals[:, None, :], 3, axis=1)
    return tri.reshape(-1), normals.reshape(-1)
