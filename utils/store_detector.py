"""
Store Detector

Works out which app store an identifier belongs to and normalizes it.

Supported inputs:
- Apple numeric ID:    "284882215"
- Apple URL:           "https://apps.apple.com/us/app/id284882215"
- Google package:      "com.facebook.katana"
- Google URL:          "https://play.google.com/store/apps/details?id=com.facebook.katana"
- Free text containing an Apple id, e.g. "facebook id284882215"
"""

import re
from typing import NamedTuple, Optional
from urllib.parse import parse_qs, urlparse

APPLE = 'apple'
GOOGLE = 'google'

_APPLE_NUMERIC_ID = re.compile(r'^\d{5,}$')
_APPLE_ID_SEGMENT = re.compile(r'id(\d{5,})', re.IGNORECASE)
_ANDROID_PACKAGE = re.compile(r'^[A-Za-z][A-Za-z0-9_]*(\.[A-Za-z0-9_]+)+$')


class DetectedApp(NamedTuple):
    app_id: str
    store: str
    reason: str


def is_valid_android_package(value: Optional[str]) -> bool:
    """Java package name: at least two dot-separated segments, starting with a letter"""
    return bool(value) and bool(_ANDROID_PACKAGE.match(value))


def detect_store_from_input(raw_input) -> Optional[DetectedApp]:
    """
    Detect the store and normalized app ID from user input

    Returns:
        DetectedApp(app_id, store, reason), or None if the input is not recognised
    """
    if not raw_input or not isinstance(raw_input, str):
        return None

    text = raw_input.strip()

    # URL patterns first
    if text.startswith('http://') or text.startswith('https://'):
        parsed = urlparse(text)
        hostname = (parsed.hostname or '').lower()

        if 'play.google.com' in hostname:
            package = parse_qs(parsed.query).get('id', [None])[0]
            if is_valid_android_package(package):
                return DetectedApp(package, GOOGLE, 'google_url')

        if 'apps.apple.com' in hostname or 'itunes.apple.com' in hostname:
            match = _APPLE_ID_SEGMENT.search(parsed.path)
            if match:
                return DetectedApp(match.group(1), APPLE, 'apple_url')

    if _APPLE_NUMERIC_ID.match(text):
        return DetectedApp(text, APPLE, 'numeric_id')

    if is_valid_android_package(text):
        return DetectedApp(text, GOOGLE, 'android_package')

    match = _APPLE_ID_SEGMENT.search(text)
    if match:
        return DetectedApp(match.group(1), APPLE, 'apple_id_in_text')

    return None


def resolve_app(raw_input, store_hint: Optional[str] = None) -> Optional[DetectedApp]:
    """
    Detect the app, honouring an explicit store hint when it fits the identifier

    Raises:
        ValueError: if store_hint is not a known store
    """
    hint = (store_hint or '').strip().lower() or None
    if hint is not None and hint not in (APPLE, GOOGLE):
        raise ValueError(f'Store type must be either "{APPLE}" or "{GOOGLE}"')

    detected = detect_store_from_input(raw_input)
    if detected is None or hint is None or detected.store == hint:
        return detected

    # A numeric id is never a package name and vice versa
    return None
