"""Shared fixtures and helpers for mesh tests.

FakeBackend implements the Backend ABC in-process with numpy so the build
manager, buffer manager and pipeline can be tested without a GPU. It reads
the field/conversion expressions back out of the synthesized Metal source
and evaluates simple C-like expressions with numpy.
"""

import math
import re
import struct

import numpy as np
import pytest

from mesh_compiler.domain import PARAMS_FORMAT, MeshLayout
from mesh_compiler.indexing import assemble_mesh, point_index
from mesh_compiler.target_config import METAL_GPU
from mesh_runtime.backend import (
    Backend,
    BufferBase,
    BuildReport,
    BuildStatus,
    Completion,
    Kernel,
    Program,
)
from mesh_runtime.context import ComputeContext
from mesh_runtime.errors import DeviceOperationFailure
from mesh_runtime.pipeline import SurfacePipeline

_FIELD_RE = re.compile(r"surface_field\(float u, float v\) \{\n(?:.*\n)*?    return (.*);\n\}")
_CONV_RE = re.compile(r"surface_point\(float u, float v, float f\) \{\n(?:.*\n)*?    return (.*);\n\}")
_FLOAT_SUFFIX_RE = re.compile(r"(\d+\.\d*|\.\d+|\d+)f\b")


def _vec3(x, y, z):
    x, y, z = np.broadcast_arrays(np.asarray(x, dtype=np.float32),
                                  np.asarray(y, dtype=np.float32),
                                  np.asarray(z, dtype=np.float32))
    return np.stack([x, y, z], axis=-1)


_NAMESPACE = {
    "__builtins__": {},
    "sin": np.sin, "cos": np.cos, "tan": np.tan, "sqrt": np.sqrt, "exp": np.exp,
    "sinf": np.sin, "cosf": np.cos, "sqrtf": np.sqrt, "pow": np.power, "fabs": np.abs, "abs": np.abs,
    "float3": _vec3, "make_float3": _vec3, "M_PI_F": np.float32(math.pi),
}


def _to_python(expr):
    return _FLOAT_SUFFIX_RE.sub(r"\1", expr)


def _balanced(code):
    depth = 0
    for ch in code:
        depth += {"(": 1, ")": -1}.get(ch, 0)
        if depth < 0:
            return False
    return depth == 0


class FakeBuffer(BufferBase):
    """Host bytearray standing in for device memory."""


class FakeBackend(Backend):
    """numpy-backed Backend with failure injection and resource accounting."""

    def __init__(self, devices=("fake:0",), failing_devices=(), fail_launch=None, fail_read=False):
        self._devices = list(devices)
        self.failing_devices = set(failing_devices)
        self.fail_launch = fail_launch
        self.fail_read = fail_read
        self.compiled = []
        self.released_programs = []
        self.allocated = []
        self.released = []
        self.kernels = []
        self.released_kernels = []
        self.launches = []

    @property
    def name(self):
        return "fake"

    @property
    def devices(self):
        return list(self._devices)

    def compile(self, source):
        self.compiled.append(source)
        reports = []
        for device in self._devices:
            if device in self.failing_devices:
                reports.append(BuildReport(device, BuildStatus.FAILURE, "error: device rejected program"))
            elif not _balanced(source.code):
                reports.append(BuildReport(device, BuildStatus.FAILURE,
                                           "program_source:12:20: error: expected ')'"))
            else:
                reports.append(BuildReport(device, BuildStatus.SUCCESS))
        return Program(source=source, reports=reports, native=source.code)

    def release_program(self, program):
        program.released = True
        self.released_programs.append(program)

    def allocate(self, size_bytes, access):
        buf = FakeBuffer(size_bytes, access, bytearray(size_bytes))
        self.allocated.append(buf)
        return buf

    def write(self, buffer, data):
        buffer.native_handle[: len(data)] = data
        return Completion("write", wait_fn=lambda: None)

    def read(self, buffer):
        def wait():
            if self.fail_read:
                raise DeviceOperationFailure("read", "CL_OUT_OF_RESOURCES")

        return Completion("read", wait_fn=wait, result_fn=lambda: bytes(buffer.native_handle))

    def release(self, buffer):
        self.released.append(buffer)

    def create_kernel(self, program, entry_point):
        kernel = Kernel(name=entry_point, program=program, native=program.native)
        self.kernels.append(kernel)
        return kernel

    def release_kernel(self, kernel):
        kernel.released = True
        self.released_kernels.append(kernel)

    def launch(self, kernel, grid, args):
        label = f"launch {kernel.name}"
        self.launches.append((kernel.name, tuple(grid)))
        if self.fail_launch == kernel.name:
            def fail():
                raise DeviceOperationFailure(label, "CL_INVALID_WORK_GROUP_SIZE")

            return Completion(label, wait_fn=fail)
        if kernel.name == "computePoints":
            self._compute_points(kernel.native, *args)
        elif kernel.name == "computeMesh":
            self._compute_mesh(*args)
        return Completion(label, wait_fn=lambda: None)

    def synchronize(self):
        pass

    @property
    def live_buffers(self):
        return [b for b in self.allocated if not any(b is r for r in self.released)]

    def _compute_points(self, code, points, params, cols, rows):
        u_min, u_step, v_min, v_step = struct.unpack(PARAMS_FORMAT, bytes(params.native_handle))
        jj, ii = np.meshgrid(np.arange(rows), np.arange(cols), indexing="ij")
        u = (np.float32(u_min) + ii * np.float32(u_step)).astype(np.float32)
        v = (np.float32(v_min) + jj * np.float32(v_step)).astype(np.float32)
        env = {"u": u, "v": v, "phi": u, "z": v}
        f = eval(_to_python(_FIELD_RE.search(code).group(1)), _NAMESPACE, env)
        env.update(f=np.broadcast_to(np.asarray(f, dtype=np.float32), u.shape))
        env["rho"] = env["f"]
        pts = eval(_to_python(_CONV_RE.search(code).group(1)), _NAMESPACE, env)
        out = np.zeros((cols * rows, 3), dtype=np.float32)
        out[point_index(ii, jj, cols).ravel()] = pts.reshape(-1, 3)
        points.native_handle[:] = out.tobytes()

    def _compute_mesh(self, points, vertices, normals, quad_cols, quad_rows, stride, closed):
        layout = MeshLayout(quad_cols=quad_cols, quad_rows=quad_rows, closed=bool(closed))
        assert layout.point_stride == stride
        pts = np.frombuffer(bytes(points.native_handle), dtype="<f4")
        verts, norms = assemble_mesh(pts, layout)
        vertices.native_handle[:] = verts.astype("<f4").tobytes()
        normals.native_handle[:] = norms.astype("<f4").tobytes()


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def context(fake_backend):
    return ComputeContext(fake_backend, METAL_GPU)


@pytest.fixture
def pipeline(context):
    return SurfacePipeline(context)


def cylinder_request_dict(expr="3.0", res=(4, 4)):
    return {
        "phi": {"min": 0.0, "max": 2 * math.pi, "res": res[0]},
        "z": {"min": 0.0, "max": 10.0, "res": res[1]},
        "expr": expr,
    }


def height_field_request_dict(expr="u * v", conv="", res=(3, 2)):
    return {
        "u": {"min": -1.0, "max": 1.0, "res": res[0]},
        "v": {"min": 0.0, "max": 2.0, "res": res[1]},
        "expr": expr,
        "conv": conv,
    }

