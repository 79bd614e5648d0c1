import base64
import binascii
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend import config
from backend.services.errors import InvalidPhoto

CASCADE_FILE = "haarcascade_frontalface_default.xml"

DATA_URI_RE = re.compile(r"^data:(image/(?:jpeg|jpg|png|webp));base64,(.+)$", re.DOTALL)


@dataclass(frozen=True)
class Photo:
    mime_type: str
    data: bytes

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


def parse_data_uri(data_uri: str) -> Photo:
    """
    Split a `data:<mime>;base64,<payload>` string into its MIME type and raw bytes.
    Only JPEG, PNG and WebP images are accepted.
    """
    match = DATA_URI_RE.match((data_uri or "").strip())
    if not match:
        raise InvalidPhoto("Photo must be a base64 image data URI (JPEG, PNG or WebP).")

    mime_type = match.group(1).replace("image/jpg", "image/jpeg")
    try:
        data = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError):
        raise InvalidPhoto("Photo data is not valid base64.")

    if not data:
        raise InvalidPhoto("Photo is empty.")
    if len(data) > config.MAX_PHOTO_BYTES:
        raise InvalidPhoto("Photo is too large.")
    return Photo(mime_type=mime_type, data=data)


def decode_frame(photo: Photo):
    img_array = np.frombuffer(photo.data, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        raise InvalidPhoto("Invalid image data.")
    return frame


def check_exposure(gray) -> str | None:
    """Returns a rejection reason, or None when the frame is usable."""
    mean_brightness = float(gray.mean())
    if mean_brightness < config.BRIGHTNESS_MIN:
        return "too_dark"
    if mean_brightness > config.BRIGHTNESS_MAX:
        return "too_bright"

    blur_score = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    if blur_score < config.BLUR_THRESHOLD:
        return "too_blurry"
    return None


@lru_cache(maxsize=1)
def face_cascade():
    # Haar cascade for face detection (simple + offline), loaded on first enrollment check
    return cv2.CascadeClassifier(str(Path(cv2.data.haarcascades) / CASCADE_FILE))


def count_faces(gray) -> int:
    faces = face_cascade().detectMultiScale(
        gray,
        scaleFactor=1.2,
        minNeighbors=5,
        minSize=(config.MIN_FACE_SIZE, config.MIN_FACE_SIZE),
    )
    return len(faces)


_REASON_MESSAGES = {
    "too_dark": "Photo is too dark. Move to a brighter spot and retake.",
    "too_bright": "Photo is overexposed. Retake with less direct light.",
    "too_blurry": "Photo is too blurry. Hold still and retake.",
    "no_face": "No face detected. Center your face in the frame.",
    "multiple_faces": "More than one face detected. Only you should be in the frame.",
}


def inspect_photo(data_uri: str, *, require_single_face: bool = False) -> Photo:
    """
    Local preconditions before a photo is sent to the judgment oracle.
    Raises InvalidPhoto with a user-facing message.
    """
    photo = parse_data_uri(data_uri)
    frame = decode_frame(photo)
    gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)

    reason = check_exposure(gray)
    if reason is None and require_single_face:
        faces = count_faces(gray)
        if faces == 0:
            reason = "no_face"
        elif faces > 1:
            reason = "multiple_faces"

    if reason:
        raise InvalidPhoto(_REASON_MESSAGES[reason])
    return photo
