"""Command line entry point: geometry request JSON in, geometry JSON out.

Example:
    echo '{"phi": {"min": 0, "max": 6.2832, "res": 64},
           "z": {"min": 0, "max": 10, "res": 32},
           "expr": "2.0f + sin(4.0f * phi) * 0.3f"}' | python -m mesh_runtime -o geometry.json
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys

from mesh_compiler.domain import GeometryRequest, RequestError
from mesh_compiler.target_config import TARGETS, get_target
from mesh_runtime.context import create_context
from mesh_runtime.errors import MeshError
from mesh_runtime.logging_config import setup_logging
from mesh_runtime.pipeline import SurfacePipeline, generate_geometry
from mesh_runtime.profiler import profile

logger = logging.getLogger("mesh_runtime.cli")


def _positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {n}")
    return n


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="python -m mesh_runtime", description=__doc__.splitlines()[0])
    parser.add_argument("request", nargs="?", help="request JSON file (default: stdin)")
    parser.add_argument("-o", "--output", help="geometry JSON file (default: stdout)")
    parser.add_argument("--backend", default="metal", choices=sorted(TARGETS))
    parser.add_argument("--device", type=int, default=0, help="index of the device to run on")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file", help="also write logs to this file")
    parser.add_argument("--profile", type=_positive_int, metavar="N", help="time N runs instead of writing geometry")
    return parser.parse_args(argv)


def _load_request(path: str | None) -> GeometryRequest:
    if path is None:
        payload = json.load(sys.stdin)
    else:
        with open(path) as f:
            payload = json.load(f)
    return GeometryRequest.from_dict(payload)


def main(argv=None) -> int:
    args = _parse_args(argv)
    setup_logging(getattr(logging, args.log_level), args.log_file)

    try:
        request = _load_request(args.request)
    except (OSError, json.JSONDecodeError, RequestError) as e:
        logger.error("Invalid request: %s", e)
        return 1

    config = dataclasses.replace(get_target(args.backend), device_index=args.device)
    try:
        with create_context(args.backend, config) as context:
            if args.profile is not None:
                result = profile(SurfacePipeline(context), request, iterations=args.profile)
                logger.info("%d triangles: %.2f ms/request over %d runs",
                            result.triangles, result.total_ms, result.iterations)
                return 0
            geometry = generate_geometry(context, request)
    except (MeshError, RuntimeError) as e:
        logger.error("%s", e)
        return 1

    if args.output:
        with open(args.output, "w") as f:
            json.dump(geometry.to_dict(), f)
        logger.info("Saved: %s", args.output)
    else:
        json.dump(geometry.to_dict(), sys.stdout)
    return 0


if __name__ == "__main__":
    sys.exit(main())
