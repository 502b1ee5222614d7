"""
Command-line interface for lumen-facemesh.
"""

import argparse
import json
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import colorlog

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO"):
    """
    Configure the root logger with a single colorized stream handler.

    Pre-existing handlers are removed so repeated calls do not duplicate output.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = colorlog.StreamHandler()
    formatter = colorlog.ColoredFormatter(
        "%(log_color)s%(levelname)-8s%(cyan)s[%(name)s]%(reset)s %(message)s",
        reset=True,
        log_colors={
            "DEBUG": "cyan",
            "INFO": "green",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "red,bg_white",
        },
    )
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)


def _package_version() -> str:
    try:
        return version("lumen-facemesh")
    except PackageNotFoundError:
        return "0.0.0"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lumen-facemesh",
        description="Face mesh detection and selfie segmentation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Detect faces with iris refinement, print JSON
  lumen-facemesh detect photo.jpg --config config/facemesh.yaml

  # Segment a selfie and save the binary mask
  lumen-facemesh segment selfie.png --output mask.png --upsample

  # Check version
  lumen-facemesh --version
""",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_package_version()}",
        help="Show program's version number and exit",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("image", type=str, help="Path to the input image")
    common.add_argument("--config", type=str, help="Path to YAML configuration file")
    common.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    detect = sub.add_parser("detect", parents=[common], help="Detect faces")
    detect.add_argument(
        "--mode",
        type=str,
        default="full",
        choices=["fast", "standard", "full"],
        help="Pipeline depth",
    )
    detect.add_argument(
        "--with-embedding",
        action="store_true",
        help="Attach identity embeddings",
    )

    segment = sub.add_parser("segment", parents=[common], help="Segment a person")
    segment.add_argument(
        "--model",
        type=str,
        choices=["general", "landscape", "multiclass"],
        help="Segmentation model (overrides config file setting)",
    )
    segment.add_argument(
        "--upsample",
        action="store_true",
        help="Resize the mask to the input image size",
    )
    segment.add_argument(
        "--output",
        type=str,
        help="Write the binary mask as an image instead of printing JSON",
    )
    segment.add_argument(
        "--threshold", type=float, default=0.5, help="Binary mask threshold"
    )
    return parser


def _load_config(path: str | None):
    from lumen_facemesh.resources.config import FaceMeshConfig

    if path:
        return FaceMeshConfig.from_yaml(path)
    return FaceMeshConfig()


def _run_detect(args, config) -> dict:
    from lumen_facemesh.general_face.face_detector import FaceDetector

    detector = FaceDetector(config)
    detector.initialize()
    try:
        data = Path(args.image).read_bytes()
        faces = detector.detect_faces_from_bytes(
            data, mode=args.mode, with_embedding=args.with_embedding
        )
        return {
            "image": args.image,
            "count": len(faces),
            "faces": [face.to_map() for face in faces],
            "stats": detector.stats.snapshot(),
        }
    finally:
        detector.dispose()


def _run_segment(args, config) -> dict | None:
    import cv2

    from lumen_facemesh.resources.loader import ModelResources
    from lumen_facemesh.segmentation.engine import SelfieSegmentation

    seg_config = config.segmentation
    if args.model:
        seg_config = type(seg_config).model_validate(
            {**seg_config.model_dump(), "model": args.model}
        )

    segmentation = SelfieSegmentation.from_resources(
        ModelResources(config.model_dir),
        seg_config,
        runtime=config.backend.runtime,
        **config.backend.engine_options(),
    )
    try:
        mask = segmentation.segment_bytes(Path(args.image).read_bytes())
        if args.upsample:
            mask = mask.upsample()
        if args.output:
            cv2.imwrite(args.output, mask.to_binary(args.threshold))
            logger.info(f"Mask written to {args.output}")
            return None
        return mask.to_map()
    finally:
        segmentation.dispose()


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    from lumen_facemesh.exceptions import FaceMeshError

    try:
        config = _load_config(args.config)
        if args.command == "detect":
            result = _run_detect(args, config)
        else:
            result = _run_segment(args, config)
    except FaceMeshError as e:
        logger.error(f"{e.kind}: {e}")
        return 1
    except OSError as e:
        logger.error(f"Cannot read {args.image}: {e}")
        return 1

    if result is not None:
        json.dump(result, sys.stdout)
        sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
