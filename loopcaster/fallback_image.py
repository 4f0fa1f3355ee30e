"""
Renders the still image streamed in degraded mode.
"""

import logging
import os

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def render_fallback_image(path, text="We will be right back", width=1280, height=720):
    """Draw a dark slate with ``text`` centred on it and write it to ``path``."""
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:] = (40, 30, 25)
    cv2.rectangle(image, (40, 40), (width - 40, height - 40), (90, 90, 90), 2)

    font = cv2.FONT_HERSHEY_SIMPLEX
    scale = max(0.6, width / 900.0)
    thickness = max(1, int(round(scale * 2)))
    (text_w, text_h), _ = cv2.getTextSize(text, font, scale, thickness)
    origin = (max(0, (width - text_w) // 2), (height + text_h) // 2)
    cv2.putText(image, text, origin, font, scale, (235, 235, 235), thickness, cv2.LINE_AA)

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    if not cv2.imwrite(path, image):
        raise OSError(f"Could not write fallback image to {path}")
    logger.info(f"Fallback image written to {path}")
    return path


def ensure_fallback_image(path, text="We will be right back"):
    """Render the fallback image unless a readable one already exists."""
    if os.path.exists(path) and cv2.imread(path) is not None:
        return path
    return render_fallback_image(path, text)
