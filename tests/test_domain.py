"""Tests for request parsing and mesh layout sizes."""

import math
import struct

import pytest

from mesh_compiler.domain import (
    PARAMS_FORMAT,
    UNIT_DOMAIN,
    DomainDescriptor,
    GeometryRequest,
    MeshLayout,
    RequestError,
    Topology,
)
from tests.conftest import cylinder_request_dict, height_field_request_dict


class TestDomainDescriptor:
    def test_step(self):
        d = DomainDescriptor(min=0.0, max=10.0, res=4)
        assert d.step == 2.5

    def test_negative_range_step(self):
        d = DomainDescriptor(min=1.0, max=-1.0, res=2)
        assert d.step == -1.0

    @pytest.mark.parametrize("res", [0, -3, 2.5, True, "4"])
    def test_invalid_res(self, res):
        with pytest.raises(RequestError, match="res"):
            DomainDescriptor(min=0.0, max=1.0, res=res)

    @pytest.mark.parametrize("value", [math.nan, math.inf, "0", None])
    def test_invalid_bounds(self, value):
        with pytest.raises(RequestError, match="min"):
            DomainDescriptor(min=value, max=1.0, res=1)

    def test_from_dict_missing_keys(self):
        with pytest.raises(RequestError, match="phi: missing max, res"):
            DomainDescriptor.from_dict({"min": 0}, "phi")

    def test_from_dict_not_an_object(self):
        with pytest.raises(RequestError, match="expected an object"):
            DomainDescriptor.from_dict([0, 1, 2], "u")

    def test_request_error_is_value_error(self):
        """Callers that catch ValueError keep working."""
        assert issubclass(RequestError, ValueError)


class TestGeometryRequest:
    def test_closed_form_inferred(self):
        req = GeometryRequest.from_dict(cylinder_request_dict())
        assert req.topology is Topology.CLOSED
        assert req.u.res == 4
        assert req.v.max == 10.0
        assert req.expr == "3.0"
        assert req.conv == ""

    def test_open_form_inferred(self):
        req = GeometryRequest.from_dict(height_field_request_dict(conv="float3(u, f, v)"))
        assert req.topology is Topology.OPEN
        assert req.u.min == -1.0
        assert req.conv == "float3(u, f, v)"

    def test_explicit_topology_overrides(self):
        d = height_field_request_dict()
        d["topology"] = "closed"
        assert GeometryRequest.from_dict(d).topology is Topology.CLOSED

    def test_invalid_topology(self):
        d = height_field_request_dict()
        d["topology"] = "torus"
        with pytest.raises(RequestError, match="topology"):
            GeometryRequest.from_dict(d)

    def test_single_domain_defaults_second_axis(self):
        req = GeometryRequest.from_dict({"u": {"min": 0, "max": 1, "res": 8}, "expr": "u"})
        assert req.v == UNIT_DOMAIN

    def test_no_domain(self):
        with pytest.raises(RequestError, match="at least one domain"):
            GeometryRequest.from_dict({"expr": "1.0"})

    def test_missing_expr_is_empty(self):
        d = cylinder_request_dict()
        del d["expr"]
        assert GeometryRequest.from_dict(d).expr == ""

    def test_null_expr_is_empty(self):
        d = cylinder_request_dict()
        d["expr"] = None
        assert GeometryRequest.from_dict(d).expr == ""

    def test_non_string_expr(self):
        d = cylinder_request_dict()
        d["expr"] = 3
        with pytest.raises(RequestError, match="expr must be a string"):
            GeometryRequest.from_dict(d)

    def test_not_an_object(self):
        with pytest.raises(RequestError):
            GeometryRequest.from_dict(["phi"])

    def test_to_dict_roundtrip(self):
        req = GeometryRequest.from_dict(cylinder_request_dict(expr="2.0f + z"))
        assert GeometryRequest.from_dict(req.to_dict()) == req

    def test_pack_params(self):
        req = GeometryRequest.from_dict(cylinder_request_dict())
        raw = req.pack_params()
        assert len(raw) == 16
        phi_min, phi_step, z_min, z_step = struct.unpack(PARAMS_FORMAT, raw)
        assert phi_min == 0.0
        assert phi_step == pytest.approx(math.pi / 2, rel=1e-6)
        assert z_min == 0.0
        assert z_step == 2.5


class TestMeshLayout:
    def test_open_sizes(self):
        layout = MeshLayout(quad_cols=3, quad_rows=2, closed=False)
        assert layout.point_grid == (4, 3)
        assert layout.num_points == 12
        assert layout.point_stride == 4
        assert layout.mesh_grid == (3, 2, 2)
        assert layout.num_triangles == 12
        assert layout.vertex_floats == 3 * 2 * 2 * 3 * 3
        assert layout.point_bytes == 12 * 3 * 4
        assert layout.vertex_bytes == layout.vertex_floats * 4

    def test_closed_sizes(self):
        """Closed grids wrap the first axis: res0 columns instead of res0 + 1."""
        layout = MeshLayout(quad_cols=3, quad_rows=2, closed=True)
        assert layout.point_grid == (3, 3)
        assert layout.num_points == 9
        assert layout.point_stride == 3
        assert layout.vertex_floats == 3 * 2 * 2 * 3 * 3

    @pytest.mark.parametrize("res0,res1", [(1, 1), (1, 7), (5, 3), (64, 32)])
    def test_vertex_floats_multiple_of_nine(self, res0, res1):
        for closed in (False, True):
            layout = MeshLayout(quad_cols=res0, quad_rows=res1, closed=closed)
            assert layout.vertex_floats == res0 * res1 * 18
            assert layout.vertex_floats % 9 == 0

    def test_mesh_scalars(self):
        assert MeshLayout(4, 2, True).mesh_scalars == (4, 2, 4, 1)
        assert MeshLayout(4, 2, False).mesh_scalars == (4, 2, 5, 0)

    def test_request_layout(self):
        req = GeometryRequest.from_dict(height_field_request_dict(res=(5, 6)))
        assert req.layout == MeshLayout(quad_cols=5, quad_rows=6, closed=False)
