#!/usr/bin/env python3
"""CLI for enrolling a staff member from a directory of face photos."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from staffclock.clock import SystemClock, to_iso
from staffclock.detectors.face_insight import InsightFaceRuntime
from staffclock.enrollment.capture import CaptureConfig, CaptureQualityGate
from staffclock.enrollment.draft import (
    EnrollmentDraft,
    clear_enrollment_draft,
    read_enrollment_draft,
    save_enrollment_draft,
)
from staffclock.enrollment.profiles import ConsentRecord, LivenessRecord, save_enrollment_profile
from staffclock.enrollment.review import ReviewConfig, run_enrollment_quality_gate
from staffclock.io_utils import list_images, read_image, setup_logging
from staffclock.storage.docstore import JsonDocumentStore


LOGGER = logging.getLogger("scripts.enroll")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Enroll a staff member from still photos")
    parser.add_argument("images_dir", type=Path, help="Directory of face photos, processed in name order")
    parser.add_argument("--staff-id", required=True, help="Staff identifier the profile is keyed by")
    parser.add_argument("--name", default=None, help="Display name stored on the profile")
    parser.add_argument(
        "--store-dir",
        type=Path,
        default=Path("data/store"),
        help="Directory of the JSON document store",
    )
    parser.add_argument(
        "--draft",
        type=Path,
        default=None,
        help="Optional draft file to resume from and update when the set is short",
    )
    parser.add_argument("--target", type=int, default=CaptureConfig.target, help="Samples required")
    parser.add_argument("--model", default="buffalo_l", help="InsightFace model pack name")
    parser.add_argument(
        "--providers",
        type=str,
        nargs="*",
        default=None,
        help="Execution providers for ONNXRuntime (e.g. CUDAExecutionProvider)",
    )
    parser.add_argument("--verbose", action="store_true", help="Log every gate transition")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    clock = SystemClock()
    config = CaptureConfig(target=args.target)
    draft = read_enrollment_draft(args.draft) if args.draft else EnrollmentDraft()
    session = draft.to_session(config.target)
    consent_at = draft.consent_accepted_at or to_iso(clock.now())
    if len(session):
        LOGGER.info("Resuming draft with %d samples", len(session))

    runtime = InsightFaceRuntime(model_name=args.model, providers=args.providers)
    gate = CaptureQualityGate(runtime, session=session, config=config)
    scores = []
    for path in list_images(args.images_dir):
        if session.is_complete:
            break
        transition = gate.tick(read_image(path))
        LOGGER.debug("%s -> %s (%s)", path.name, transition.state.value, transition.hint)
        if transition.accepted and transition.diagnostics and transition.diagnostics.face_confidence:
            scores.append(transition.diagnostics.face_confidence)

    if not session.is_complete:
        LOGGER.warning("Only %d/%d samples accepted: %s", len(session), config.target, gate.hint)
        if args.draft:
            save_enrollment_draft(args.draft, EnrollmentDraft.from_session(session, consent_at))
        sys.exit(1)

    outcome = run_enrollment_quality_gate(runtime, session, ReviewConfig(target=config.target))
    if not outcome.completed or outcome.review is None:
        LOGGER.warning(outcome.hint)
        if args.draft and outcome.needs_recapture:
            save_enrollment_draft(args.draft, EnrollmentDraft.from_session(session, consent_at))
        sys.exit(1)

    now = to_iso(clock.now())
    confidence = sum(scores) / len(scores) if scores else 0.0
    profile = save_enrollment_profile(
        JsonDocumentStore(args.store_dir),
        args.staff_id,
        outcome.review,
        consent=ConsentRecord(accepted_at=consent_at),
        liveness=LivenessRecord(passed_at=now, confidence=round(confidence, 4)),
        name=args.name,
        target=config.target,
    )
    if args.draft:
        clear_enrollment_draft(args.draft)
    LOGGER.info(
        "Enrollment saved: staff=%s descriptors=%d rev=%s",
        profile.staff_id,
        len(profile.descriptors),
        profile.rev,
    )


if __name__ == "__main__":
    main()
