"""QR payload generation and parsing.

Payload layout: ``<PREFIX>_<KIND>_<id>_<timestamp ms>_<8 hex chars>``.
"""

import secrets
import time
from dataclasses import dataclass
from typing import Literal, cast

from .config import Config
from .exceptions import InvalidQRCode

QRKind = Literal["student", "vehicle"]

_KINDS: tuple[str, ...] = ("student", "vehicle")


@dataclass(frozen=True)
class QRData:
    kind: QRKind
    id: str
    timestamp: int
    nonce: str | None = None


def generate_qr_data(kind: QRKind, entity_id: str, timestamp: int | None = None) -> str:
    """Build a unique QR payload for a student or vehicle.

    Raises:
        ValueError: If kind is unknown or entity_id contains an underscore
    """
    if kind not in _KINDS:
        raise ValueError(f"Unknown QR kind: {kind}")
    if "_" in entity_id:
        raise ValueError(f"Entity id must not contain '_': {entity_id}")
    if timestamp is None:
        timestamp = int(time.time() * 1000)
    nonce = secrets.token_hex(4)
    return f"{Config.QR_CODE_PREFIX}_{kind.upper()}_{entity_id}_{timestamp}_{nonce}"


def parse_qr_data(data: str) -> QRData:
    """Parse a scanned QR payload.

    Raises:
        InvalidQRCode: If the payload has the wrong prefix, kind or shape
    """
    parts = data.strip().split("_")
    if len(parts) < 4 or parts[0] != Config.QR_CODE_PREFIX:
        raise InvalidQRCode("Invalid QR code format")

    kind = parts[1].lower()
    if kind not in _KINDS:
        raise InvalidQRCode(f"Unknown QR code type: {parts[1]}")

    try:
        timestamp = int(parts[3])
    except ValueError as e:
        raise InvalidQRCode("Invalid QR code timestamp") from e

    return QRData(
        kind=cast(QRKind, kind),
        id=parts[2],
        timestamp=timestamp,
        nonce=parts[4] if len(parts) > 4 else None,
    )


def normalize_plate(license_plate: str) -> str:
    """Uppercase a license plate and strip everything but letters and digits."""
    return "".join(ch for ch in license_plate.upper() if ch.isascii() and ch.isalnum())
