"""Tests for ProgramBuildManager: per-device reports, caching, failure handling."""

import asyncio

import pytest

from mesh_compiler.codegen import MetalDialect
from mesh_compiler.domain import GeometryRequest
from mesh_runtime.build import ProgramBuildManager
from mesh_runtime.errors import BuildFailure
from tests.conftest import FakeBackend, cylinder_request_dict


def _manager(backend):
    return ProgramBuildManager(backend, MetalDialect())


class TestPointProgram:
    def test_builds_on_every_device(self):
        backend = FakeBackend(devices=("gpu:0", "gpu:1"))
        program = asyncio.run(_manager(backend).point_program(
            GeometryRequest.from_dict(cylinder_request_dict())))
        assert program.ok
        assert [r.device for r in program.reports] == ["gpu:0", "gpu:1"]

    def test_invalid_expression_raises_build_failure(self):
        backend = FakeBackend()
        request = GeometryRequest.from_dict(cylinder_request_dict(expr="sin(u"))
        with pytest.raises(BuildFailure) as excinfo:
            asyncio.run(_manager(backend).point_program(request))
        failure = excinfo.value
        assert failure.kind == "points"
        assert len(failure.failed_reports) == 1
        assert "expected ')'" in failure.failed_reports[0].log
        assert "expected ')'" in str(failure)

    def test_failed_program_is_released(self):
        backend = FakeBackend()
        request = GeometryRequest.from_dict(cylinder_request_dict(expr="sin(u"))
        with pytest.raises(BuildFailure):
            asyncio.run(_manager(backend).point_program(request))
        assert len(backend.released_programs) == 1
        assert backend.released_programs[0].released

    def test_one_failing_device_fails_the_build(self):
        backend = FakeBackend(devices=("gpu:0", "gpu:1"), failing_devices=("gpu:1",))
        with pytest.raises(BuildFailure) as excinfo:
            asyncio.run(_manager(backend).point_program(
                GeometryRequest.from_dict(cylinder_request_dict())))
        assert [r.ok for r in excinfo.value.reports] == [True, False]
        assert [r.device for r in excinfo.value.failed_reports] == ["gpu:1"]

    def test_logs_every_device(self, caplog):
        backend = FakeBackend(devices=("gpu:0", "gpu:1"), failing_devices=("gpu:1",))
        with caplog.at_level("DEBUG", logger="mesh_runtime.build"):
            with pytest.raises(BuildFailure):
                asyncio.run(_manager(backend).point_program(
                    GeometryRequest.from_dict(cylinder_request_dict())))
        assert "Build on gpu:0: ✓" in caplog.text
        assert "Build on gpu:1: ✗" in caplog.text
        assert "device rejected program" in caplog.text


class TestMeshProgram:
    def test_built_once(self):
        backend = FakeBackend()
        manager = _manager(backend)

        async def run():
            first = await manager.mesh_program()
            second = await manager.mesh_program()
            return first, second

        first, second = asyncio.run(run())
        assert first is second
        assert [s.kind for s in backend.compiled] == ["mesh"]

    def test_concurrent_first_use_builds_once(self):
        backend = FakeBackend()
        manager = _manager(backend)

        async def run():
            return await asyncio.gather(*(manager.mesh_program() for _ in range(4)))

        programs = asyncio.run(run())
        assert all(p is programs[0] for p in programs)
        assert len(backend.compiled) == 1

    def test_failure_not_cached(self):
        backend = FakeBackend(failing_devices=("fake:0",))
        manager = _manager(backend)
        for _ in range(2):
            with pytest.raises(BuildFailure):
                asyncio.run(manager.mesh_program())
        assert len(backend.compiled) == 2

    def test_close_releases_mesh_program(self):
        backend = FakeBackend()
        manager = _manager(backend)
        program = asyncio.run(manager.mesh_program())
        manager.close()
        assert program.released
        manager.close()
        assert backend.released_programs == [program]

    def test_release_is_idempotent(self):
        backend = FakeBackend()
        manager = _manager(backend)
        program = asyncio.run(manager.mesh_program())
        manager.release(program)
        manager.release(program)
        assert backend.released_programs == [program]
