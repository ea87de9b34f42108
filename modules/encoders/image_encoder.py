"""
modules/encoders/image_encoder.py

Turns decoded pixel buffers into L2-normalized image embeddings.

Input images arrive as interleaved RGBA (or RGB) uint8 buffers at a fixed
width/height. They are converted to planar NCHW float32 in [0, 1] with the
alpha channel dropped, then run through a vision backend.

Output handling:
    (B, D)        -> normalized directly
    (B, C, H, W)  -> global average pool over H x W, then normalized
    anything else -> UnsupportedVisionOutputError

The default backend is a TorchScript module at AI_VISION_MODEL_PATH.
A top-k label lookup is provided for diagnostics; it is not used for retrieval.
"""

import json
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
from loguru import logger
from PIL import Image, UnidentifiedImageError

from config.settings import (
    VISION_INPUT_SIZE,
    VISION_LABELS_PATH,
    VISION_MODEL_NAME,
    VISION_MODEL_PATH,
)
from core.errors import EncoderConfigError, IngestionError, UnsupportedVisionOutputError
from modules.encoders.text_encoder import l2_normalize

PixelBuffer = Union[bytes, bytearray, memoryview, np.ndarray]
# (buffer, width, height)
ImageInput = Tuple[PixelBuffer, int, int]
VisionBackend = Callable[[np.ndarray], np.ndarray]


# ── Preprocessing ──────────────────────────────────────────────────────────

def rgba_to_planar(buffer: PixelBuffer, width: int, height: int, channels: int = 4) -> np.ndarray:
    """
    Convert an interleaved uint8 buffer to a (3, H, W) float32 array in [0, 1].

    Args:
        buffer: raw bytes laid out as H x W x channels
        width, height: image size in pixels
        channels: 4 for RGBA (alpha is dropped), 3 for RGB

    Returns:
        Channel-major float32 array.
    """
    if channels not in (3, 4):
        raise ValueError(f"channels must be 3 or 4, got {channels}")

    if isinstance(buffer, np.ndarray):
        pixels = buffer.astype(np.uint8, copy=False).reshape(-1)
    else:
        pixels = np.frombuffer(bytes(buffer), dtype=np.uint8)
    expected = width * height * channels
    if pixels.size != expected:
        raise ValueError(
            f"Pixel buffer has {pixels.size} bytes, expected {expected} "
            f"for {width}x{height}x{channels}"
        )

    hwc = pixels.reshape(height, width, channels)[:, :, :3]
    return np.ascontiguousarray(hwc.transpose(2, 0, 1), dtype=np.float32) / 255.0


def load_image_rgba(image_path: Path, size: int = VISION_INPUT_SIZE) -> ImageInput:
    """
    Decode an image file with Pillow and resize it to size x size RGBA.

    Raises:
        IngestionError: if the file is missing or not a decodable image.
    """
    image_path = Path(image_path)
    if not image_path.exists():
        raise IngestionError(f"Image not found: {image_path}")
    try:
        with Image.open(image_path) as img:
            img = img.convert("RGBA").resize((size, size))
            return img.tobytes(), size, size
    except (UnidentifiedImageError, OSError) as e:
        raise IngestionError(f"Cannot decode image {image_path}: {e}") from e


def pool_vision_output(output: np.ndarray) -> np.ndarray:
    output = np.asarray(output, dtype=np.float32)
    if output.ndim == 2:
        return output
    if output.ndim == 4:
        # Global average pooling per channel over H x W
        return output.mean(axis=(2, 3))
    raise UnsupportedVisionOutputError(
        f"unsupported vision output format: rank {output.ndim} shape {output.shape}"
    )


# ── Backend ────────────────────────────────────────────────────────────────

class TorchScriptVisionBackend:
    """Runs a TorchScript vision model and returns its first output."""

    def __init__(self, model_path: Path = VISION_MODEL_PATH):
        model_path = Path(model_path)
        if not model_path.exists():
            raise EncoderConfigError(f"Vision model not found: {model_path}")

        import torch
        self._torch = torch
        self.device = "cuda" if torch.cuda.is_available() else "cpu"
        logger.info(f"Loading vision model from {model_path} on {self.device}...")
        self._model = torch.jit.load(str(model_path), map_location=self.device)
        self._model.eval()
        logger.success(f"Vision model loaded on {self.device}")

    def __call__(self, pixels: np.ndarray) -> np.ndarray:
        torch = self._torch
        with torch.no_grad():
            out = self._model(torch.from_numpy(pixels).to(self.device))
        if isinstance(out, dict):
            out = next(iter(out.values()))
        elif isinstance(out, (list, tuple)):
            out = out[0]
        return out.detach().cpu().numpy()


# ── Public class ───────────────────────────────────────────────────────────

class ImageEncoder:
    """
    Batch image embedder over fixed-size pixel buffers.

    Usage:
        encoder = ImageEncoder()
        buf, w, h = load_image_rgba("photo.png")
        [vector] = encoder.embed([(buf, w, h)])
    """

    def __init__(
        self,
        model_path: Path = VISION_MODEL_PATH,
        labels_path: Path = VISION_LABELS_PATH,
        input_size: int = VISION_INPUT_SIZE,
        backend: Optional[VisionBackend] = None,
        model_name: str = VISION_MODEL_NAME,
    ):
        self.model_path = Path(model_path)
        self.labels_path = Path(labels_path)
        self.input_size = input_size
        self.model_name = model_name
        self._backend = backend
        self._labels: Optional[List[str]] = None
        self._load_lock = threading.Lock()

    def _get_backend(self) -> VisionBackend:
        if self._backend is None:
            with self._load_lock:
                if self._backend is None:
                    self._backend = TorchScriptVisionBackend(self.model_path)
        return self._backend

    def preprocess(self, images: Sequence[ImageInput]) -> np.ndarray:
        planes = [rgba_to_planar(buf, w, h) for buf, w, h in images]
        shapes = {p.shape for p in planes}
        if len(shapes) > 1:
            raise ValueError(f"Images in one batch must share a size, got {sorted(shapes)}")
        return np.stack(planes)

    def embed(self, images: Sequence[ImageInput]) -> List[np.ndarray]:
        """Embed a batch of (buffer, width, height) images. Empty input returns []."""
        if not images:
            return []

        pixels = self.preprocess(images)
        raw = self._get_backend()(pixels)
        vectors = l2_normalize(pool_vision_output(raw))
        logger.debug(f"Embedded {len(images)} images -> dim {vectors.shape[1]}")
        return list(vectors)

    def embed_file(self, image_path: Path) -> np.ndarray:
        return self.embed([load_image_rgba(image_path, self.input_size)])[0]

    # ── Diagnostics ────────────────────────────────────────────────────────

    def _load_labels(self) -> List[str]:
        if self._labels is None:
            if not self.labels_path.exists():
                logger.warning(f"Vision labels file not found: {self.labels_path}")
                self._labels = []
            else:
                with open(self.labels_path, "r", encoding="utf-8") as f:
                    self._labels = [str(label) for label in json.load(f)]
        return self._labels

    def top_labels(self, logits: Sequence[float], k: int = 5) -> List[Tuple[str, float]]:
        """Highest-scoring (label, logit) pairs for one image's classification logits."""
        labels = self._load_labels()
        if not labels:
            return []
        scores = np.asarray(logits, dtype=np.float32).reshape(-1)
        order = np.argsort(-scores, kind="stable")[:k]
        return [(labels[i], float(scores[i])) for i in order if i < len(labels)]
