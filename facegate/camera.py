from __future__ import annotations
from typing import Protocol
import cv2
import numpy as np


class CameraError(RuntimeError):
    """The camera could not be opened (missing device or permission denied)."""


class Camera(Protocol):
    def read(self) -> np.ndarray: ...
    def release(self) -> None: ...


class OpenCVCamera:
    def __init__(self, index: int = 0, width: int = 640, height: int = 480):
        self._cap = cv2.VideoCapture(index)
        if not self._cap.isOpened():
            self._cap.release()
            raise CameraError(f"Camera {index} could not be opened")
        self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        self._released = False

    def read(self) -> np.ndarray:
        ok, frame = self._cap.read()
        if not ok or frame is None:
            raise RuntimeError("Failed to read camera frame")
        return frame

    def release(self) -> None:
        if not self._released:
            self._cap.release()
            self._released = True
