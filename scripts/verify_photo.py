#!/usr/bin/env python3
"""CLI for a single Time In / Time Out verification against a stored enrollment."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from staffclock.attendance.geofence import Position, StaticGeolocationProvider
from staffclock.attendance.verify import VerificationPipeline
from staffclock.config import load_policy_config, load_policy_yaml
from staffclock.detectors.face_insight import InsightFaceRuntime
from staffclock.io_utils import dump_json, read_image, setup_logging
from staffclock.storage.docstore import JsonDocumentStore
from staffclock.types import AttendanceAction


LOGGER = logging.getLogger("scripts.verify")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify one photo and record an attendance event")
    parser.add_argument("image", type=Path, help="Probe photo")
    parser.add_argument("--staff-id", required=True, help="Staff identifier to verify against")
    parser.add_argument("--action", choices=[a.value for a in AttendanceAction], default="IN")
    parser.add_argument(
        "--store-dir",
        type=Path,
        default=Path("data/store"),
        help="Directory of the JSON document store",
    )
    parser.add_argument(
        "--policy",
        type=Path,
        default=None,
        help="Policy YAML (defaults to the stored policy document)",
    )
    parser.add_argument("--lat", type=float, default=None, help="Reported latitude")
    parser.add_argument("--lng", type=float, default=None, help="Reported longitude")
    parser.add_argument("--accuracy", type=float, default=None, help="Reported accuracy in metres")
    parser.add_argument("--model", default="buffalo_l", help="InsightFace model pack name")
    parser.add_argument(
        "--providers",
        type=str,
        nargs="*",
        default=None,
        help="Execution providers for ONNXRuntime (e.g. CUDAExecutionProvider)",
    )
    parser.add_argument("--output", type=Path, default=None, help="Optional JSON file for the result")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    setup_logging()

    store = JsonDocumentStore(args.store_dir)
    policy = load_policy_yaml(args.policy) if args.policy else load_policy_config(store)
    position = None
    if args.lat is not None and args.lng is not None:
        position = Position(lat=args.lat, lng=args.lng, accuracy_m=args.accuracy)

    runtime = InsightFaceRuntime(model_name=args.model, providers=args.providers)
    pipeline = VerificationPipeline(
        runtime,
        store,
        args.staff_id,
        geolocation=StaticGeolocationProvider(position),
        policy=policy,
    )
    attempt = pipeline.attempt(AttendanceAction(args.action), read_image(args.image))
    if attempt.result is None:
        LOGGER.warning("No terminal result (%s): %s", attempt.face_state.value, attempt.message)
        sys.exit(2)

    result = attempt.result
    LOGGER.info("%s %s: %s", result.reason_code.value, result.action.value, result.message)
    if args.output:
        dump_json(args.output, result)
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
