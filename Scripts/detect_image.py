import argparse
import logging
import sys
from pathlib import Path

import cv2

from keypoint_kit import (
    DetectorConfig,
    KeypointKitError,
    OpenCvRenderer,
    labels_as_list,
    load_class_names,
    load_detector_config,
    load_pipeline,
)

logger = logging.getLogger("detect_image")


def _print_progress(fraction: float) -> None:
    print(f"\rLoading model... {fraction * 100:.2f}%", end="", flush=True)
    if fraction >= 1.0:
        print()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run keypoint detection on one image and draw the result.")
    parser.add_argument("--image", required=True, help="Path to an input image.")
    parser.add_argument("--model", default="models/yolov8n-pose.onnx", help="Path to a pose model (.onnx/.pt).")
    parser.add_argument("--labels", default=None, help="Class labels (JSON list/object or metadata.yaml).")
    parser.add_argument("--config", default=None, help="Detector config JSON.")
    parser.add_argument("--backend", default=None, help="Force backend: onnxruntime / torchscript.")
    parser.add_argument("--imgsz", type=int, default=640, help="Model input size when the model does not declare it.")
    parser.add_argument(
        "--onnx-providers",
        default=None,
        help='Comma-separated ORT providers, e.g. "CUDAExecutionProvider,CPUExecutionProvider".',
    )
    parser.add_argument("--show", action="store_true", help="Show a window with visualized detections.")
    parser.add_argument("--out", default=None, help="Optional output path to save the visualization.")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...).")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.imgsz < 32:
        raise ValueError("--imgsz must be >= 32")

    labels = labels_as_list(load_class_names(args.labels)) if args.labels else []
    if args.config:
        config = load_detector_config(Path(args.config))
    else:
        config = DetectorConfig(num_classes=max(len(labels), 1))

    onnx_providers = None
    if args.onnx_providers:
        onnx_providers = [p.strip() for p in str(args.onnx_providers).split(",") if p.strip()]

    bgr = cv2.imread(args.image)
    if bgr is None:
        raise FileNotFoundError(f"Could not read image at path: {args.image}")
    image = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)

    try:
        pipeline = load_pipeline(
            args.model,
            config=config,
            labels=labels,
            renderer=OpenCvRenderer(keypoint_dims=config.keypoint_dims, keypoints_per_detection=config.num_keypoints),
            on_progress=_print_progress,
            backend=args.backend,
            input_size=(int(args.imgsz), int(args.imgsz)),
            onnx_providers=onnx_providers,
        )
    except KeypointKitError as exc:
        logger.error("%s", exc)
        return 1

    canvas = image.copy()
    try:
        detections = pipeline.detect(image, canvas=canvas, on_complete=lambda: print("done"))
    except KeypointKitError as exc:
        logger.error("Detection failed: %s", exc)
        return 1

    for det in detections:
        name = labels[det.class_id] if det.class_id < len(labels) else str(det.class_id)
        print(name, det.score, det.as_yxyx(), det.keypoints_flat())

    vis = cv2.cvtColor(canvas, cv2.COLOR_RGB2BGR)
    if args.out:
        ok = cv2.imwrite(args.out, vis)
        if not ok:
            raise RuntimeError(f"Failed to write output image: {args.out}")

    if args.show:
        cv2.imshow("detections", vis)
        cv2.waitKey(0)
        cv2.destroyAllWindows()

    return 0


if __name__ == "__main__":
    sys.exit(main())
