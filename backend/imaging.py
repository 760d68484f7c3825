import cv2  # type: ignore
import numpy as np  # type: ignore

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png")
QR_MIN_SIZE = 256
QR_QUIET_ZONE_MODULES = 4


def decode_image(data: bytes):
    """Decode JPG/PNG bytes into a BGR frame; ValueError if unreadable."""
    if not data:
        raise ValueError("Invalid image data.")
    img_array = np.frombuffer(data, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        raise ValueError("Invalid image data.")
    return frame


def decode_qr(data: bytes) -> str | None:
    """Return the text of the first QR code found in an uploaded photo."""
    frame = decode_image(data)
    detector = cv2.QRCodeDetector()
    text, points, _ = detector.detectAndDecode(frame)
    if points is None or not text:
        return None
    return text


def render_qr_png(text: str, size: int = QR_MIN_SIZE) -> bytes:
    encoder = cv2.QRCodeEncoder.create()
    qr = encoder.encode(text)

    # one pixel per module out of the encoder; scale up without smoothing
    scale = max(1, size // max(qr.shape[:2]))
    qr = cv2.resize(qr, None, fx=scale, fy=scale, interpolation=cv2.INTER_NEAREST)
    border = QR_QUIET_ZONE_MODULES * scale
    qr = cv2.copyMakeBorder(
        qr, border, border, border, border, cv2.BORDER_CONSTANT, value=255
    )

    ok, buf = cv2.imencode(".png", qr)
    if not ok:
        raise RuntimeError("Could not encode QR image.")
    return buf.tobytes()
