import unittest

import numpy as np

from keypoint_kit.postprocess import KeypointPostConfig, KeypointPostprocessor, decode_output
from keypoint_kit.types import ScaleRatio


def _raw_from_rows(rows):
    # rows: (A, C) -> raw (1, C, A)
    return np.asarray(rows, dtype=np.float32).T[None, ...]


class TestDecodeOutput(unittest.TestCase):
    def test_boxes_are_yxyx_corners(self) -> None:
        # [cx, cy, w, h, cls0, cls1, kx, ky, kc]
        raw = _raw_from_rows(
            [
                [50, 60, 10, 20, 0.1, 0.9, 1, 2, 0.5],
                [55, 66, 12, 18, 0.7, 0.2, 3, 4, 0.6],
            ]
        )
        decoded = decode_output(raw, num_classes=2)

        self.assertEqual(decoded.boxes.shape, (2, 4))
        self.assertTrue(np.allclose(decoded.boxes[0], [50.0, 45.0, 70.0, 55.0]))
        self.assertTrue(np.allclose(decoded.boxes[1], [57.0, 49.0, 75.0, 61.0]))

    def test_scores_and_class_ids(self) -> None:
        raw = _raw_from_rows(
            [
                [50, 60, 10, 20, 0.1, 0.9, 0.3],
                [55, 66, 12, 18, 0.7, 0.2, 0.1],
            ]
        )
        decoded = decode_output(raw, num_classes=3)
        self.assertTrue(np.allclose(decoded.scores, np.array([0.9, 0.7], dtype=np.float32)))
        self.assertTrue(np.array_equal(decoded.class_ids, np.array([1, 0], dtype=np.int32)))
        self.assertEqual(decoded.class_ids.dtype, np.int32)
        self.assertEqual(decoded.keypoints.shape, (2, 0))

    def test_keypoints_are_remaining_channels(self) -> None:
        raw = _raw_from_rows(
            [
                [50, 60, 10, 20, 0.8, 1, 2, 0.5, 3, 4, 0.25],
                [55, 66, 12, 18, 0.4, 5, 6, 0.75, 7, 8, 1.0],
            ]
        )
        decoded = decode_output(raw, num_classes=1)
        self.assertEqual(decoded.keypoints.shape, (2, 6))
        self.assertTrue(np.allclose(decoded.keypoints[1], [5, 6, 0.75, 7, 8, 1.0]))
        self.assertEqual(decoded.num_anchors, 2)

    def test_anchor_order_is_preserved_by_gather(self) -> None:
        a = 32
        rows = np.zeros((a, 8), dtype=np.float32)
        rows[:, 0:4] = [50, 60, 10, 20]
        rows[:, 4] = np.linspace(0.0, 1.0, a)
        rows[:, 5] = np.arange(a)  # keypoint x doubles as anchor id
        decoded = decode_output(_raw_from_rows(rows), num_classes=1)

        picked = decoded.gather(np.array([7, 3, 30]))
        self.assertTrue(np.array_equal(picked.keypoints[:, 0], [7, 3, 30]))
        self.assertTrue(np.allclose(picked.scores, rows[[7, 3, 30], 4]))

    def test_rejects_unexpected_layout(self) -> None:
        with self.assertRaises(ValueError):
            decode_output(np.zeros((8, 10), dtype=np.float32), num_classes=1)
        with self.assertRaises(ValueError):
            decode_output(np.zeros((2, 8, 10), dtype=np.float32), num_classes=1)
        with self.assertRaises(ValueError):
            decode_output(np.zeros((1, 4, 10), dtype=np.float32), num_classes=1)


class TestKeypointPostprocessor(unittest.TestCase):
    def test_process_keeps_single_best_detection(self) -> None:
        rows = np.zeros((16, 8), dtype=np.float32)
        rows[:, 0:4] = [8, 8, 4, 4]
        rows[:, 4] = 0.05
        rows[5] = [32, 32, 16, 16, 0.9, 30, 34, 0.8]
        rows[9] = [10, 10, 8, 8, 0.6, 9, 9, 0.4]

        post = KeypointPostprocessor(KeypointPostConfig(num_classes=1))
        ratio = ScaleRatio(x=1.0, y=1.0, padded_side=64)
        dets = post.process(_raw_from_rows(rows), ratio, (64, 64))

        self.assertEqual(len(dets), 1)
        det = dets[0]
        self.assertAlmostEqual(det.score, 0.9, places=5)
        self.assertEqual(det.class_id, 0)
        self.assertEqual(det.as_yxyx(), (24.0, 24.0, 40.0, 40.0))
        self.assertEqual(len(det.keypoints), 1)
        self.assertAlmostEqual(det.keypoints[0].x, 30.0)
        self.assertAlmostEqual(det.keypoints[0].y, 34.0)
        self.assertAlmostEqual(det.keypoints[0].confidence, 0.8, places=5)

    def test_two_dim_keypoints_have_no_confidence(self) -> None:
        rows = np.array([[32, 32, 16, 16, 0.9, 30, 34]], dtype=np.float32)
        post = KeypointPostprocessor(KeypointPostConfig(num_classes=1, keypoint_dims=2))
        dets = post.process(_raw_from_rows(rows), ScaleRatio(1.0, 1.0, 64), (64, 64))
        self.assertEqual(len(dets), 1)
        self.assertIsNone(dets[0].keypoints[0].confidence)
        self.assertEqual(dets[0].keypoints_flat(), [30.0, 34.0])


if __name__ == "__main__":
    unittest.main()
