"""Error kinds raised by the mesh runtime."""

from __future__ import annotations

from typing import TYPE_CHECKING

from mesh_compiler.domain import RequestError

if TYPE_CHECKING:
    from mesh_runtime.backend import BuildReport

__all__ = [
    "MeshError",
    "BuildFailure",
    "DeviceOperationFailure",
    "ResourceInUseError",
    "RequestError",
]


class MeshError(Exception):
    """Base class for runtime failures of a geometry request."""


class BuildFailure(MeshError):
    """One or more devices failed to compile a kernel source.

    Carries every device's BuildReport so callers can log each diagnostic.
    Retrying without changing the expression fails the same way.
    """

    def __init__(self, reports: list[BuildReport], kind: str = "program"):
        self.reports = list(reports)
        self.kind = kind
        lines = [f"{kind} build failed on {len(self.failed_reports)} of {len(self.reports)} device(s)"]
        for report in self.failed_reports:
            lines.append(f"  [{report.device}] {report.log.strip() or '(no log)'}")
        super().__init__("\n".join(lines))

    @property
    def failed_reports(self) -> list[BuildReport]:
        return [r for r in self.reports if not r.ok]


class DeviceOperationFailure(MeshError):
    """A transfer or kernel launch was rejected by the device."""

    def __init__(self, stage: str, detail: str):
        self.stage = stage
        self.detail = detail
        super().__init__(f"{stage}: {detail}")


class ResourceInUseError(MeshError):
    """A device resource was released while busy, released twice, or used after release."""
