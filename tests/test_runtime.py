import asyncio
import tempfile
import unittest
from unittest import mock
from pathlib import Path

import numpy as np

from keypoint_kit.config import DetectorConfig
from keypoint_kit.errors import InferenceShapeError, InvalidImageError, ModelLoadError, ModelNotReadyError
from keypoint_kit.nms import NMSConfig
from keypoint_kit.runtime import KeypointPipeline, emit_results, infer_backend, load_model
from keypoint_kit.types import Detection, Keypoint, ScaleRatio

MODEL_SIZE = 64


def make_raw(anchors=32, best=None, best_score=0.9, background=0.05):
    """(1, 4 + 1 + 3, anchors) output with one strong anchor."""
    raw = np.zeros((1, 8, anchors), dtype=np.float32)
    raw[0, 0:4, :] = [[8], [8], [4], [4]]
    raw[0, 4, :] = background
    if best is not None:
        idx, (cx, cy, w, h), (kx, ky, kc) = best
        raw[0, :, idx] = [cx, cy, w, h, best_score, kx, ky, kc]
    return raw


class FakeModel:
    def __init__(self, output, events=None, on_execute=None):
        self.output = output
        self.events = events
        self.on_execute = on_execute
        self.inputs = []

    @property
    def input_shape(self):
        return (1, MODEL_SIZE, MODEL_SIZE, 3)

    def execute(self, tensor):
        self.inputs.append(tensor.shape)
        if self.events is not None:
            self.events.append("execute")
        if self.on_execute is not None:
            self.on_execute()
        return self.output


class RecordingRenderer:
    def __init__(self, events=None):
        self.events = events if events is not None else []
        self.boxes_calls = []
        self.points_calls = []

    def render_boxes(self, canvas, labels, boxes_flat, scores_flat, class_ids_flat, ratio):
        self.events.append("boxes")
        self.boxes_calls.append((canvas, list(labels), list(boxes_flat), list(scores_flat), list(class_ids_flat), ratio))

    def render_points(self, canvas, keypoints_flat, ratio):
        self.events.append("points")
        self.points_calls.append((canvas, list(keypoints_flat), ratio))


class TestKeypointPipeline(unittest.TestCase):
    def setUp(self) -> None:
        # 200x100 source: model x in [0, 64] covers the full width, y in [0, 32] the full height
        self.image = np.zeros((100, 200, 3), dtype=np.uint8)
        self.raw = make_raw(best=(11, (48, 16, 32, 32), (32, 16, 0.75)))

    def test_detect_returns_source_space_detection(self) -> None:
        model = FakeModel(self.raw)
        pipe = KeypointPipeline(model, config=DetectorConfig(num_classes=1, num_keypoints=1))
        dets = pipe.detect(self.image)

        self.assertEqual(model.inputs, [(1, MODEL_SIZE, MODEL_SIZE, 3)])
        self.assertEqual(len(dets), 1)
        det = dets[0]
        self.assertAlmostEqual(det.score, 0.9, places=5)
        self.assertEqual(det.class_id, 0)
        # model box x in [32, 64], y in [0, 32] -> x in [100, 200], y in [0, 100]
        self.assertTrue(np.allclose(det.as_yxyx(), (0.0, 100.0, 100.0, 200.0), atol=1e-3))
        self.assertAlmostEqual(det.keypoints[0].x, 100.0, places=3)
        self.assertAlmostEqual(det.keypoints[0].y, 50.0, places=3)
        self.assertAlmostEqual(det.keypoints[0].confidence, 0.75, places=5)

    def test_call_alias(self) -> None:
        pipe = KeypointPipeline(FakeModel(self.raw))
        self.assertEqual(len(pipe(self.image)), 1)

    def test_renderer_and_callback_order(self) -> None:
        events = []
        renderer = RecordingRenderer(events)
        pipe = KeypointPipeline(FakeModel(self.raw), labels=["person"], renderer=renderer)
        canvas = self.image.copy()

        pipe.detect(self.image, canvas=canvas, on_complete=lambda: events.append("done"))

        self.assertEqual(events, ["boxes", "points", "done"])
        _, labels, boxes_flat, scores_flat, class_ids_flat, ratio = renderer.boxes_calls[0]
        self.assertIs(renderer.boxes_calls[0][0], canvas)
        self.assertEqual(labels, ["person"])
        self.assertEqual(len(boxes_flat), 4)
        self.assertEqual(len(scores_flat), 1)
        self.assertEqual(class_ids_flat, [0])
        self.assertIsInstance(ratio, ScaleRatio)
        self.assertEqual(ratio.as_pair(), (1.0, 2.0))
        self.assertEqual(ratio.source_size, (200.0, 100.0))
        self.assertIs(renderer.points_calls[0][2], ratio)
        self.assertEqual(len(renderer.points_calls[0][1]), 3)

    def test_no_detection_is_empty_not_error(self) -> None:
        renderer = RecordingRenderer()
        pipe = KeypointPipeline(FakeModel(make_raw(background=0.1)), renderer=renderer)
        dets = pipe.detect(self.image, canvas=self.image.copy())
        self.assertEqual(dets, [])
        self.assertEqual(renderer.boxes_calls[0][2], [])
        self.assertEqual(renderer.points_calls[0][1], [])

    def test_max_outputs_is_configurable(self) -> None:
        raw = make_raw(best=(3, (10, 10, 8, 8), (10, 10, 0.5)))
        raw[0, :, 20] = [50, 20, 8, 8, 0.8, 50, 20, 0.5]
        cfg = DetectorConfig(nms=NMSConfig(max_outputs=5))
        dets = KeypointPipeline(FakeModel(raw), config=cfg).detect(self.image)
        self.assertEqual([round(d.score, 2) for d in dets], [0.9, 0.8])

    def test_buffers_return_to_baseline(self) -> None:
        pipe = KeypointPipeline(FakeModel(self.raw))
        seen = []
        pipe.model.on_execute = lambda: seen.append(pipe.buffers.live_count)

        baseline = pipe.buffers.live_count
        pipe.detect(self.image)
        self.assertEqual(pipe.buffers.live_count, baseline)
        self.assertGreater(seen[0], baseline)

    def test_buffers_released_on_failure_and_model_stays_usable(self) -> None:
        model = FakeModel(np.zeros((1, 6, 32), dtype=np.float32))
        pipe = KeypointPipeline(model)

        with self.assertRaises(InferenceShapeError):
            pipe.detect(self.image)
        self.assertEqual(pipe.buffers.live_count, 0)

        with self.assertRaises(InvalidImageError):
            pipe.detect(np.zeros((0, 5, 3), dtype=np.uint8))
        self.assertEqual(pipe.buffers.live_count, 0)

        model.output = self.raw
        self.assertEqual(len(pipe.detect(self.image)), 1)
        self.assertEqual(pipe.buffers.live_count, 0)

    def test_shape_errors(self) -> None:
        cases = [
            np.zeros((8, 32), dtype=np.float32),
            np.zeros((2, 8, 32), dtype=np.float32),
            np.zeros((1, 4, 32), dtype=np.float32),
        ]
        for out in cases:
            with self.subTest(shape=out.shape):
                with self.assertRaises(InferenceShapeError):
                    KeypointPipeline(FakeModel(out)).detect(self.image)

        with self.assertRaises(InferenceShapeError):
            KeypointPipeline(FakeModel(self.raw), config=DetectorConfig(num_keypoints=17)).detect(self.image)
        with self.assertRaises(InferenceShapeError):
            KeypointPipeline(FakeModel(self.raw), config=DetectorConfig(num_anchors=8400)).detect(self.image)

    def test_no_model_blocks_detection(self) -> None:
        pipe = KeypointPipeline()
        self.assertFalse(pipe.is_ready)
        with self.assertRaises(ModelNotReadyError):
            pipe.detect(self.image)

    def test_failed_load_blocks_detection(self) -> None:
        progress = []
        with tempfile.TemporaryDirectory() as tmp:
            pipe = KeypointPipeline()
            with self.assertRaises(ModelLoadError):
                pipe.load(Path(tmp) / "missing.onnx", on_progress=progress.append)
        self.assertIsNotNone(pipe.load_error)
        with self.assertRaises(ModelNotReadyError) as ctx:
            pipe.detect(self.image)
        self.assertIs(ctx.exception.__cause__, pipe.load_error)
        self.assertEqual(progress, [])


class TestKeypointPipelineAsync(unittest.IsolatedAsyncioTestCase):
    async def test_detect_async_matches_detect(self) -> None:
        image = np.zeros((100, 200, 3), dtype=np.uint8)
        raw = make_raw(best=(11, (48, 16, 32, 32), (32, 16, 0.75)))
        pipe = KeypointPipeline(FakeModel(raw))
        dets = await pipe.detect_async(image)
        self.assertEqual([d.as_yxyx() for d in dets], [d.as_yxyx() for d in pipe.detect(image)])
        self.assertEqual(pipe.buffers.live_count, 0)

    async def test_calls_are_serialized(self) -> None:
        events = []
        image = np.zeros((40, 40, 3), dtype=np.uint8)
        pipe = KeypointPipeline(FakeModel(make_raw(best=(0, (8, 8, 4, 4), (8, 8, 1.0))), events=events))

        await asyncio.gather(
            pipe.detect_async(image, on_complete=lambda: events.append("done")),
            pipe.detect_async(image, on_complete=lambda: events.append("done")),
        )
        self.assertEqual(events, ["execute", "done", "execute", "done"])

    async def test_sync_call_during_suspended_async_call(self) -> None:
        image = np.zeros((100, 200, 3), dtype=np.uint8)
        raw = make_raw(best=(11, (48, 16, 32, 32), (32, 16, 0.75)))
        pipe = KeypointPipeline(FakeModel(raw))

        task = asyncio.ensure_future(pipe.detect_async(image))
        # let the async call run up to its suspension in NMS
        await asyncio.sleep(0)
        self.assertEqual(len(pipe.model.inputs), 1)
        self.assertFalse(task.done())

        sync_dets = pipe.detect(image)
        async_dets = await task

        self.assertEqual([d.as_yxyx() for d in sync_dets], [d.as_yxyx() for d in async_dets])
        self.assertEqual(pipe.buffers.live_count, 0)

    async def test_failure_releases_buffers(self) -> None:
        pipe = KeypointPipeline(FakeModel(np.zeros((1, 3, 10), dtype=np.float32)))
        with self.assertRaises(InferenceShapeError):
            await pipe.detect_async(np.zeros((10, 10, 3), dtype=np.uint8))
        self.assertEqual(pipe.buffers.live_count, 0)


class TestEmitResults(unittest.TestCase):
    def test_flattens_in_detection_order(self) -> None:
        renderer = RecordingRenderer()
        done = []
        dets = [
            Detection(1, 2, 3, 4, 0.9, 0, (Keypoint(5, 6, 0.5),)),
            Detection(10, 20, 30, 40, 0.6, 2, (Keypoint(50, 60, 0.25),)),
        ]
        scale = ScaleRatio(1.0, 1.5, 30)
        emit_results(renderer, "canvas", ["a", "b", "c"], dets, scale, lambda: done.append(1))

        _, _, boxes_flat, scores_flat, class_ids_flat, ratio = renderer.boxes_calls[0]
        self.assertEqual(boxes_flat, [1, 2, 3, 4, 10, 20, 30, 40])
        self.assertEqual(scores_flat, [0.9, 0.6])
        self.assertEqual(class_ids_flat, [0, 2])
        self.assertIs(ratio, scale)
        self.assertEqual(renderer.points_calls[0][1], [5, 6, 0.5, 50, 60, 0.25])
        self.assertEqual(done, [1])


class TestLoadModel(unittest.TestCase):
    def test_infer_backend(self) -> None:
        self.assertEqual(infer_backend(Path("m.onnx")), "onnxruntime")
        self.assertEqual(infer_backend(Path("m.torchscript")), "torchscript")
        with self.assertRaises(ValueError):
            infer_backend(Path("m.bin"))

    def test_missing_file_is_load_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ModelLoadError):
                load_model("missing.onnx", root=tmp)

    def test_unknown_backend(self) -> None:
        with self.assertRaises(ModelLoadError) as ctx:
            load_model("model.onnx", backend="tensorflow", root="/")
        self.assertIsInstance(ctx.exception.__cause__, ValueError)

        with self.assertRaises(ModelLoadError):
            load_model("model.bin", root="/")

    def test_unknown_backend_recorded_by_pipeline(self) -> None:
        pipe = KeypointPipeline()
        with self.assertRaises(ModelLoadError):
            pipe.load("model.onnx", backend="tensorflow", root="/")
        self.assertIsNotNone(pipe.load_error)
        with self.assertRaises(ModelNotReadyError):
            pipe.detect(np.zeros((10, 10, 3), dtype=np.uint8))

    def _load_with_backend_progress(self, fractions):
        class FakeBackend:
            def __init__(self, model_path, cfg, on_progress=None):
                for f in fractions:
                    on_progress(f)

        progress = []
        with mock.patch("keypoint_kit.backends.onnxruntime_backend.OnnxRuntimeBackend", FakeBackend):
            load_model("model.onnx", root="/", on_progress=progress.append)
        return progress

    def test_progress_ends_on_single_one(self) -> None:
        self.assertEqual(self._load_with_backend_progress([0.0, 0.5, 1.0]), [0.0, 0.5, 1.0])

    def test_progress_completed_when_backend_stops_short(self) -> None:
        self.assertEqual(self._load_with_backend_progress([0.0, 0.5]), [0.0, 0.5, 1.0])
        self.assertEqual(self._load_with_backend_progress([]), [1.0])


if __name__ == "__main__":
    unittest.main()
