"""
QR Code Generator Module - VanIt Boarding & Emergency Service
Author: VanIt Transport Team
Date: October 2026

This module handles QR code generation and scan payload validation for
boarding sessions. A captain's device displays one QR code per open session;
the student's device submits whatever it decoded from that code.

Features:
- Secure random session tokens
- Signed JSON payloads (HMAC-SHA256 with the service QR secret)
- Boundary normalization of scanned payloads (raw token, JSON or base64 JSON)
- QR code image rendering as base64 PNG or raw PNG bytes
- Optional caption under the code (route, captain, expiry)
"""

import qrcode
from PIL import Image, ImageDraw, ImageFont
import io
import base64
import binascii
import json
import hashlib
import hmac
import secrets
import logging
import string
from datetime import datetime
from typing import Any, Dict, List, Optional

PAYLOAD_TYPE = 'vanit_boarding'
TOKEN_ALPHABET = set(string.ascii_letters + string.digits + '-_')


class QRGenerator:
    """
    QR code generator for boarding sessions.
    Produces the token stored with each session and the signed payload
    embedded in the QR image, and turns a scanned payload back into a token.
    """

    def __init__(self, secret_key: str, token_length: int = 32,
                 box_size: int = 10, border: int = 4):
        """
        Initialize the QR code generator.

        Args:
            secret_key (str): Key used to sign QR payloads
            token_length (int): Random bytes per session token
            box_size (int): Size of each QR box in pixels
            border (int): QR border width in boxes (minimum is 4)
        """
        self.logger = logging.getLogger(__name__)
        self._secret = secret_key.encode('utf-8')
        self.token_length = token_length

        self.default_settings = {
            'version': 1,
            'error_correction': qrcode.constants.ERROR_CORRECT_H,
            'box_size': box_size,
            'border': border,
            'fill_color': 'black',
            'back_color': 'white'
        }

    def generate_token(self) -> str:
        """Return a fresh URL-safe session token."""
        return secrets.token_urlsafe(self.token_length)

    def _sign(self, fields: Dict[str, Any]) -> str:
        canonical = json.dumps(fields, sort_keys=True, separators=(',', ':'))
        return hmac.new(self._secret, canonical.encode('utf-8'), hashlib.sha256).hexdigest()

    def build_session_payload(self, token: str, route_id: str, captain_id: str,
                              generated_at: datetime, expires_at: datetime) -> str:
        """
        Build the signed JSON payload embedded in a session QR code.

        Args:
            token (str): Session token
            route_id (str): Route identifier
            captain_id (str): Captain identifier
            generated_at (datetime): Session creation time
            expires_at (datetime): Session expiry time

        Returns:
            str: JSON payload with checksum
        """
        fields = {
            'type': PAYLOAD_TYPE,
            'token': token,
            'route_id': route_id,
            'captain_id': captain_id,
            'generated_at': generated_at.isoformat(),
            'expires_at': expires_at.isoformat()
        }
        fields['checksum'] = self._sign(fields)
        return json.dumps(fields, sort_keys=True)

    def extract_token(self, scanned: Optional[str]) -> Optional[str]:
        """
        Normalize a scanned QR payload into a session token.

        Expiry is not checked here; the session record decides whether the
        boarding window is still open.

        Args:
            scanned (str): Raw token, signed JSON payload, or base64 of it

        Returns:
            Optional[str]: Token, or None for malformed or forged payloads
        """
        if not scanned or not isinstance(scanned, str):
            return None

        scanned = scanned.strip()
        decoded = self._decode_json(scanned) or self._decode_base64_json(scanned)

        if decoded is None:
            if set(scanned) <= TOKEN_ALPHABET:
                return scanned
            self.logger.warning("Rejected unparsable QR payload")
            return None

        if decoded.get('type') != PAYLOAD_TYPE or not decoded.get('token'):
            self.logger.warning("Rejected QR payload with wrong type or no token")
            return None

        checksum = decoded.get('checksum', '')
        fields = {k: v for k, v in decoded.items() if k != 'checksum'}
        if not hmac.compare_digest(str(checksum), self._sign(fields)):
            self.logger.warning("Rejected QR payload with invalid checksum")
            return None

        return decoded['token']

    @staticmethod
    def _decode_json(data: str) -> Optional[Dict[str, Any]]:
        if not data.startswith('{'):
            return None
        try:
            decoded = json.loads(data)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, dict) else None

    def _decode_base64_json(self, data: str) -> Optional[Dict[str, Any]]:
        try:
            text = base64.b64decode(data, validate=True).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return None
        return self._decode_json(text)

    def _make_image(self, data: str):
        settings = self.default_settings
        qr = qrcode.QRCode(
            version=settings['version'],
            error_correction=settings['error_correction'],
            box_size=settings['box_size'],
            border=settings['border']
        )
        qr.add_data(data)
        qr.make(fit=True)
        return qr.make_image(fill_color=settings['fill_color'],
                             back_color=settings['back_color'])

    def _add_caption(self, qr_img: Image.Image, lines: List[str]) -> Image.Image:
        """
        Add caption lines centered below a QR code image.

        Args:
            qr_img (Image.Image): QR code image
            lines (List[str]): Text lines, first one drawn larger

        Returns:
            Image.Image: QR code with caption
        """
        original_size = qr_img.size
        line_height = 22
        new_img = Image.new('RGB', (original_size[0], original_size[1] + 20 + line_height * len(lines)), 'white')
        new_img.paste(qr_img, (0, 0))

        draw = ImageDraw.Draw(new_img)
        try:
            font_large = ImageFont.truetype("arial.ttf", 16)
            font_small = ImageFont.truetype("arial.ttf", 12)
        except (IOError, OSError):
            font_large = ImageFont.load_default()
            font_small = ImageFont.load_default()

        text_y = original_size[1] + 5
        for index, line in enumerate(lines):
            font = font_large if index == 0 else font_small
            bbox = draw.textbbox((0, 0), line, font=font)
            draw.text(((new_img.size[0] - (bbox[2] - bbox[0])) // 2, text_y), line,
                      fill='black', font=font)
            text_y += line_height

        return new_img

    def generate_qr_png(self, data: str, caption: Optional[List[str]] = None) -> bytes:
        """
        Render QR code data as PNG bytes.

        Args:
            data (str): Payload to encode
            caption (List[str]): Optional text lines drawn under the code

        Returns:
            bytes: PNG image
        """
        img = self._make_image(data).convert('RGB')
        if caption:
            img = self._add_caption(img, caption)

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        return buffer.getvalue()

    def generate_qr_image(self, data: str, caption: Optional[List[str]] = None) -> str:
        """Render QR code data as a base64 encoded PNG string."""
        return base64.b64encode(self.generate_qr_png(data, caption)).decode()

    @staticmethod
    def session_caption(route_id: str, captain_id: str, expires_at: datetime) -> List[str]:
        """Caption lines printed under a boarding session QR code."""
        return [f"Route {route_id}", f"Captain {captain_id}",
                f"Valid until {expires_at.strftime('%H:%M')}"]
