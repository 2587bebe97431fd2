import numpy as np
from facegate.config import Settings
from facegate.gate import (
    ADVISORY_NO_DETECTOR,
    HINT_BLURRY,
    HINT_MANY_FACES,
    HINT_NO_FACE,
    HINT_OFF_CENTER,
    HINT_TOO_SMALL,
    ForegroundGate,
    blur_score,
)

GATE_SETTINGS = Settings(gate_min_face_area=0.05, gate_max_center_offset=0.25,
                         gate_min_blur_var=40.0, gate_thumb_width=96)

def _sharp_frame():
    return np.random.RandomState(0).randint(0, 256, (480, 640, 3)).astype(np.uint8)

def _flat_frame():
    return np.full((480, 640, 3), 128, dtype=np.uint8)

class StaticDetector:
    def __init__(self, boxes):
        self.boxes = boxes

    def detect(self, frame_bgr):
        return list(self.boxes)

CENTERED = (220, 140, 200, 200)

def test_single_centered_sharp_face_passes():
    gate = ForegroundGate(StaticDetector([CENTERED]), GATE_SETTINGS)
    d = gate.evaluate(_sharp_frame())
    assert d.accepted and d.hint is None
    assert d.face_area > 0.1
    assert d.center_offset < 0.01
    assert d.blur_var > 40.0

def test_rejections_carry_specific_hints():
    cases = [
        ([], HINT_NO_FACE),
        ([CENTERED, (10, 10, 50, 50)], HINT_MANY_FACES),
        ([(290, 210, 60, 60)], HINT_TOO_SMALL),
        ([(0, 0, 200, 200)], HINT_OFF_CENTER),
    ]
    for boxes, hint in cases:
        d = ForegroundGate(StaticDetector(boxes), GATE_SETTINGS).evaluate(_sharp_frame())
        assert not d.accepted
        assert d.hint == hint

def test_blurry_frame_rejected():
    d = ForegroundGate(StaticDetector([CENTERED]), GATE_SETTINGS).evaluate(_flat_frame())
    assert not d.accepted
    assert d.hint == HINT_BLURRY
    assert d.blur_var == 0.0

def test_blur_score_orders_sharp_above_flat():
    assert blur_score(_sharp_frame()) > blur_score(_flat_frame())

def test_missing_detector_passes_and_advises_once():
    gate = ForegroundGate(None, GATE_SETTINGS)
    first = gate.evaluate(_flat_frame())
    second = gate.evaluate(_flat_frame())
    assert first.accepted and second.accepted
    assert first.advisory == ADVISORY_NO_DETECTOR
    assert second.advisory is None
    assert gate.degraded
