"""Kernel source templates for the point and mesh kernels.

Each dialect has a fixed mesh template (built once per context) and a point
template with $field_expr / $conv_expr slots filled per request. Points,
vertices and normals are stored as packed float triples (12 bytes), so the
kernels index float arrays directly instead of using float3 storage.

Dispatch rounds grids up to whole threadgroups/blocks; every kernel takes its
logical grid size and returns early outside it.
"""

from __future__ import annotations

from string import Template

# ---------------------------------------------------------------------------
# Metal Shading Language
# ---------------------------------------------------------------------------

METAL_COMMON = r"""
#include <metal_stdlib>
using namespace metal;

static inline uint point_index(uint i, uint j, uint stride, uint closed) {
    return (closed != 0 ? i % stride : i) + j * stride;
}

static inline float3 load_point(device const float *buf, uint idx) {
    return float3(buf[3 * idx + 0], buf[3 * idx + 1], buf[3 * idx + 2]);
}

static inline void store_point(device float *buf, uint idx, float3 p) {
    buf[3 * idx + 0] = p.x;
    buf[3 * idx + 1] = p.y;
    buf[3 * idx + 2] = p.z;
}
"""

METAL_POINT_TEMPLATE = Template(METAL_COMMON + r"""
struct SurfaceParams {
    float u_min;
    float u_step;
    float v_min;
    float v_step;
};

static inline float surface_field(float u, float v) {
$field_aliases
    return $field_expr;
}

static inline float3 surface_point(float u, float v, float f) {
$conv_aliases
    return $conv_expr;
}

kernel void computePoints(
    device float *points [[buffer(0)]],
    constant SurfaceParams &params [[buffer(1)]],
    constant uint &cols [[buffer(2)]],
    constant uint &rows [[buffer(3)]],
    uint2 gid [[thread_position_in_grid]])
{
    if (gid.x >= cols || gid.y >= rows) return;
    float u = params.u_min + gid.x * params.u_step;
    float v = params.v_min + gid.y * params.v_step;
    store_point(points, point_index(gid.x, gid.y, cols, 0), surface_point(u, v, surface_field(u, v)));
}
""")

METAL_MESH_SOURCE = METAL_COMMON + r"""
static inline uint quad_index(uint i, uint j, uint stride) {
    return i + j * stride;
}

static inline uint triangle_index(uint i, uint j, uint t, uint stride) {
    return quad_index(i, j, stride) * 2 + t;
}

kernel void computeMesh(
    device const float *points [[buffer(0)]],
    device float *vertices [[buffer(1)]],
    device float *normals [[buffer(2)]],
    constant uint &quad_cols [[buffer(3)]],
    constant uint &quad_rows [[buffer(4)]],
    constant uint &stride [[buffer(5)]],
    constant uint &closed [[buffer(6)]],
    uint3 gid [[thread_position_in_grid]])
{
    uint i = gid.x;
    uint j = gid.y;
    uint t = gid.z;
    if (i >= quad_cols || j >= quad_rows || t >= 2) return;

    float3 v0 = load_point(points, point_index(i, j, stride, closed));
    float3 v1 = load_point(points, t == 0 ? point_index(i + 1, j, stride, closed)
                                          : point_index(i + 1, j + 1, stride, closed));
    float3 v2 = load_point(points, t == 0 ? point_index(i + 1, j + 1, stride, closed)
                                          : point_index(i, j + 1, stride, closed));

    uint ti = triangle_index(i, j, t, quad_cols);
    store_point(vertices, 3 * ti + 0, v0);
    store_point(vertices, 3 * ti + 1, v1);
    store_point(vertices, 3 * ti + 2, v2);

    float3 n = normalize(cross(v1 - v0, v2 - v0));
    store_point(normals, 3 * ti + 0, n);
    store_point(normals, 3 * ti + 1, n);
    store_point(normals, 3 * ti + 2, n);
}
"""

METAL_OPEN_CONVERSION = "float3(u, v, f)"
METAL_CLOSED_CONVERSION = "float3(cos(phi) * rho, sin(phi) * rho, z)"

# ---------------------------------------------------------------------------
# CUDA C (NVRTC)
# ---------------------------------------------------------------------------

CUDA_COMMON = r"""
__device__ __forceinline__ unsigned int point_index(unsigned int i, unsigned int j,
                                                    unsigned int stride, unsigned int closed) {
    return (closed != 0 ? i % stride : i) + j * stride;
}

__device__ __forceinline__ float3 load_point(const float* buf, unsigned int idx) {
    return make_float3(buf[3 * idx + 0], buf[3 * idx + 1], buf[3 * idx + 2]);
}

__device__ __forceinline__ void store_point(float* buf, unsigned int idx, float3 p) {
    buf[3 * idx + 0] = p.x;
    buf[3 * idx + 1] = p.y;
    buf[3 * idx + 2] = p.z;
}
"""

CUDA_POINT_TEMPLATE = Template(CUDA_COMMON + r"""
struct SurfaceParams {
    float u_min;
    float u_step;
    float v_min;
    float v_step;
};

__device__ float surface_field(float u, float v) {
$field_aliases
    return $field_expr;
}

__device__ float3 surface_point(float u, float v, float f) {
$conv_aliases
    return $conv_expr;
}

extern "C" __global__ void computePoints(float* points, const SurfaceParams* params,
                                         unsigned int cols, unsigned int rows) {
    unsigned int i = blockIdx.x * blockDim.x + threadIdx.x;
    unsigned int j = blockIdx.y * blockDim.y + threadIdx.y;
    if (i >= cols || j >= rows) return;
    float u = params->u_min + i * params->u_step;
    float v = params->v_min + j * params->v_step;
    store_point(points, point_index(i, j, cols, 0), surface_point(u, v, surface_field(u, v)));
}
""")

CUDA_MESH_SOURCE = CUDA_COMMON + r"""
__device__ __forceinline__ unsigned int quad_index(unsigned int i, unsigned int j, unsigned int stride) {
    return i + j * stride;
}

__device__ __forceinline__ unsigned int triangle_index(unsigned int i, unsigned int j,
                                                       unsigned int t, unsigned int stride) {
    return quad_index(i, j, stride) * 2 + t;
}

__device__ __forceinline__ float3 sub3(float3 a, float3 b) {
    return make_float3(a.x - b.x, a.y - b.y, a.z - b.z);
}

__device__ __forceinline__ float3 cross3(float3 a, float3 b) {
    return make_float3(a.y * b.z - a.z * b.y, a.z * b.x - a.x * b.z, a.x * b.y - a.y * b.x);
}

__device__ __forceinline__ float3 normalize3(float3 a) {
    float inv = 1.0f / sqrtf(a.x * a.x + a.y * a.y + a.z * a.z);
    return make_float3(a.x * inv, a.y * inv, a.z * inv);
}

extern "C" __global__ void computeMesh(const float* points, float* vertices, float* normals,
                                       unsigned int quad_cols, unsigned int quad_rows,
                                       unsigned int stride, unsigned int closed) {
    unsigned int i = blockIdx.x * blockDim.x + threadIdx.x;
    unsigned int j = blockIdx.y * blockDim.y + threadIdx.y;
    unsigned int t = blockIdx.z * blockDim.z + threadIdx.z;
    if (i >= quad_cols || j >= quad_rows || t >= 2) return;

    float3 v0 = load_point(points, point_index(i, j, stride, closed));
    float3 v1 = load_point(points, t == 0 ? point_index(i + 1, j, stride, closed)
                                          : point_index(i + 1, j + 1, stride, closed));
    float3 v2 = load_point(points, t == 0 ? point_index(i + 1, j + 1, stride, closed)
                                          : point_index(i, j + 1, stride, closed));

    unsigned int ti = triangle_index(i, j, t, quad_cols);
    store_point(vertices, 3 * ti + 0, v0);
    store_point(vertices, 3 * ti + 1, v1);
    store_point(vertices, 3 * ti + 2, v2);

    float3 n = normalize3(cross3(sub3(v1, v0), sub3(v2, v0)));
    store_point(normals, 3 * ti + 0, n);
    store_point(normals, 3 * ti + 1, n);
    store_point(normals, 3 * ti + 2, n);
}
"""

CUDA_OPEN_CONVERSION = "make_float3(u, v, f)"
CUDA_CLOSED_CONVERSION = "make_float3(cosf(phi) * rho, sinf(phi) * rho, z)"

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------

DEFAULT_FIELD_EXPR = "0.0f"

# Closed surfaces are cylindrical: u is the angle, v the height, f the radius.
CLOSED_FIELD_ALIASES = "    float phi = u;\n    float z = v;"
CLOSED_CONV_ALIASES = "    float phi = u;\n    float z = v;\n    float rho = f;"
