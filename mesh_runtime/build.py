"""Program build manager: compile kernel sources and check per-device reports.

A program is usable only if every device reports success. Otherwise every
device's result is logged and BuildFailure is raised with all reports. The
fixed mesh program is built once per manager and reused; point programs are
built per request.
"""

from __future__ import annotations

import asyncio
import logging

from mesh_compiler.codegen import (
    KernelDialect,
    KernelSource,
    synthesize_mesh_source,
    synthesize_point_source,
)
from mesh_compiler.domain import GeometryRequest
from mesh_runtime.backend import Backend, BuildReport, Program
from mesh_runtime.errors import BuildFailure

logger = logging.getLogger(__name__)


def log_build_reports(kind: str, reports: list[BuildReport]) -> None:
    failed = any(not r.ok for r in reports)
    log = logger.error if failed else logger.debug
    log("Build results (%s program):", kind)
    for report in reports:
        log("Build on %s: %s", report.device, "✓" if report.ok else "✗")
        if not report.ok:
            logger.error("%s", report.log.strip() or "(no diagnostic output)")
        elif report.log.strip():
            logger.debug("%s", report.log.strip())


class ProgramBuildManager:
    """Compiles kernel sources for every device of a backend."""

    def __init__(self, backend: Backend, dialect: KernelDialect):
        self._backend = backend
        self._dialect = dialect
        self._mesh_program: Program | None = None
        self._mesh_lock = asyncio.Lock()

    @property
    def dialect(self) -> KernelDialect:
        return self._dialect

    async def build(self, source: KernelSource) -> Program:
        """Compile source off the event loop and check every device's report.

        Raises:
            BuildFailure: if any device failed; carries all reports.
        """
        logger.debug("Building %s program %s", source.kind, source.fingerprint[:12])
        program = await asyncio.to_thread(self._backend.compile, source)
        log_build_reports(source.kind, program.reports)
        if not program.ok:
            self._backend.release_program(program)
            raise BuildFailure(program.reports, kind=source.kind)
        return program

    async def mesh_program(self) -> Program:
        """Return the fixed mesh program, building it on first use."""
        async with self._mesh_lock:
            if self._mesh_program is None:
                self._mesh_program = await self.build(synthesize_mesh_source(self._dialect))
                logger.info("Mesh program ready on %d device(s)", len(self._mesh_program.reports))
            return self._mesh_program

    async def point_program(self, request: GeometryRequest) -> Program:
        """Build the request-specific point program."""
        return await self.build(synthesize_point_source(request, self._dialect))

    def release(self, program: Program) -> None:
        if not program.released:
            self._backend.release_program(program)

    def close(self) -> None:
        if self._mesh_program is not None:
            self.release(self._mesh_program)
            self._mesh_program = None
