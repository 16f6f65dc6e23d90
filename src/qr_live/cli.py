from __future__ import annotations

import argparse
import logging
import sys

from .decoders import PRIMARY_BACKENDS
from .hardware import OpenCvFrameSource, SimulatedFrameSource, SimulatedScene
from .interfaces import FrameSourceInterface
from .pylablib_camera import create_pylablib_frame_source
from .session import FACINGS, ScanSession, SessionConfig

DEMO_PAYLOAD = "https://example.org"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scan one QR code from a live camera")
    parser.add_argument(
        "--camera",
        choices=["simulate", "opencv", "orca", "uc480"],
        default="opencv",
        help="Camera backend selection",
    )
    parser.add_argument(
        "--device-index",
        type=int,
        default=None,
        help="Explicit camera index (overrides --facing for OpenCV, passed as idx to pylablib)",
    )
    parser.add_argument("--facing", choices=list(FACINGS), default="environment", help="Preferred camera facing")
    parser.add_argument("--width", type=int, default=640, help="Ideal capture width in pixels")
    parser.add_argument("--height", type=int, default=480, help="Ideal capture height in pixels")
    parser.add_argument(
        "--decoder",
        choices=["auto", *PRIMARY_BACKENDS, "heuristic"],
        default="auto",
        help="Decoder backend; 'auto' tries pyzbar then OpenCV and falls back to the contrast heuristic",
    )
    parser.add_argument(
        "--no-inverted",
        action="store_true",
        help="Do not retry decoding on the inverted image (light-on-dark codes)",
    )
    parser.add_argument("--timeout", type=float, default=30.0, help="Give up after this many seconds")
    parser.add_argument("--payload", default=DEMO_PAYLOAD, help="Payload rendered by --camera simulate")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def _build_source(args) -> FrameSourceInterface:
    if args.camera == "simulate":
        scene = SimulatedScene(width=args.width, height=args.height)
        frames = [scene.blank()] * 3 + [scene.qr_code(args.payload, module_px=4)]
        return SimulatedFrameSource(frames, warmup_ticks=2)

    if args.camera == "opencv":
        return OpenCvFrameSource(device_index=args.device_index)

    camera_kwargs = {} if args.device_index is None else {"idx": args.device_index}
    return create_pylablib_frame_source(args.camera, **camera_kwargs)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = SessionConfig(
        preferred_facing=args.facing,
        ideal_resolution=(args.width, args.height),
        decoder=args.decoder,
        try_inverted=not args.no_inverted,
    )
    errors: list[str] = []

    with ScanSession(_build_source(args), config, on_error=errors.append) as session:
        session.start()
        if not session.wait(timeout=args.timeout):
            print(f"No QR code found within {args.timeout:g} s", file=sys.stderr)
            return 2

        result = session.result
        if result is None:
            message = errors[0] if errors else (session.failure_reason or "scan aborted")
            print(f"Camera error: {message}", file=sys.stderr)
            return 1

        print(result.payload)
        if result.synthetic:
            print(
                "Warning: no QR decoder backend is available; the payload above is a placeholder "
                "from the contrast heuristic, not decoded content. Install pyzbar or OpenCV.",
                file=sys.stderr,
            )
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
