from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple
import logging

import cv2
import numpy as np

from .config import Settings, settings as default_settings
from .logger import log_event

# Lazy import for the optional local detector
try:
    import mediapipe as mp  # type: ignore
except Exception:  # pragma: no cover
    mp = None

Box = Tuple[float, float, float, float]  # x, y, w, h in pixels

HINT_NO_FACE = "Look at the camera"
HINT_MANY_FACES = "Only one person in front of the camera, please"
HINT_TOO_SMALL = "Move a little closer"
HINT_OFF_CENTER = "Center your face in the frame"
HINT_BLURRY = "Hold still, the image is blurry"
ADVISORY_NO_DETECTOR = "Local face check unavailable; every frame is sent for recognition"


class FaceDetector(Protocol):
    def detect(self, frame_bgr: np.ndarray) -> List[Box]: ...


class MediapipeFaceDetector:
    def __init__(self, min_confidence: float = 0.5):
        if mp is None:
            raise RuntimeError("mediapipe is not installed")
        self._detector = mp.solutions.face_detection.FaceDetection(
            model_selection=0, min_detection_confidence=min_confidence
        )

    def detect(self, frame_bgr: np.ndarray) -> List[Box]:
        h, w = frame_bgr.shape[:2]
        img_rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        out = self._detector.process(img_rgb)
        boxes: List[Box] = []
        for det in out.detections or []:
            rb = det.location_data.relative_bounding_box
            boxes.append((rb.xmin * w, rb.ymin * h, rb.width * w, rb.height * h))
        return boxes


def default_detector() -> Optional[FaceDetector]:
    if mp is None:
        return None
    return MediapipeFaceDetector()


def blur_score(frame_bgr: np.ndarray, thumb_width: int = 96) -> float:
    """Variance of the Laplacian over a small grayscale thumbnail."""
    h, w = frame_bgr.shape[:2]
    if w > thumb_width:
        thumb = cv2.resize(frame_bgr, (thumb_width, max(1, int(round(h * thumb_width / w)))),
                           interpolation=cv2.INTER_AREA)
    else:
        thumb = frame_bgr
    gray = thumb if thumb.ndim == 2 else cv2.cvtColor(thumb, cv2.COLOR_BGR2GRAY)
    return float(cv2.Laplacian(gray, cv2.CV_64F).var())


@dataclass
class GateDecision:
    accepted: bool
    hint: Optional[str] = None
    face_area: Optional[float] = None
    center_offset: Optional[float] = None
    blur_var: Optional[float] = None
    advisory: Optional[str] = None


class ForegroundGate:
    """
    Decides locally, without any network call, whether a frame is worth
    sending for identification. Without a detector every frame passes and
    `degraded` flips once.
    """

    def __init__(self, detector: Optional[FaceDetector] = None, settings: Optional[Settings] = None):
        self.detector = detector
        self.settings = settings or default_settings
        self.degraded = False

    def evaluate(self, frame_bgr: np.ndarray) -> GateDecision:
        s = self.settings
        if self.detector is None:
            if self.degraded:
                return GateDecision(accepted=True)
            self.degraded = True
            log_event("gate_degraded", level=logging.WARNING, reason="no_local_detector")
            return GateDecision(accepted=True, advisory=ADVISORY_NO_DETECTOR)

        boxes = self.detector.detect(frame_bgr)
        if not boxes:
            return GateDecision(accepted=False, hint=HINT_NO_FACE)
        if len(boxes) > 1:
            return GateDecision(accepted=False, hint=HINT_MANY_FACES)

        h, w = frame_bgr.shape[:2]
        x, y, bw, bh = boxes[0]
        area = (bw * bh) / float(max(w * h, 1))
        cx = (x + bw / 2.0) / w
        cy = (y + bh / 2.0) / h
        offset = max(abs(cx - 0.5), abs(cy - 0.5))
        if area < s.gate_min_face_area:
            return GateDecision(accepted=False, hint=HINT_TOO_SMALL, face_area=area, center_offset=offset)
        if offset > s.gate_max_center_offset:
            return GateDecision(accepted=False, hint=HINT_OFF_CENTER, face_area=area, center_offset=offset)

        blur = blur_score(frame_bgr, s.gate_thumb_width)
        if blur < s.gate_min_blur_var:
            return GateDecision(accepted=False, hint=HINT_BLURRY, face_area=area,
                                center_offset=offset, blur_var=blur)
        return GateDecision(accepted=True, face_area=area, center_offset=offset, blur_var=blur)
