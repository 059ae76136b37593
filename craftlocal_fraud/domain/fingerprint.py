"""
Device fingerprint parsing and identity.

Browsers report fingerprints as camelCase JSON (userAgent, screen.colorDepth,
hardwareConcurrency...).  Two fingerprints identify the same device when their
canonical JSON is identical.
"""
import hashlib
import json
from dataclasses import asdict
from typing import Any, Dict, Mapping

from .models import ConnectionInfo, DeviceFingerprint, ScreenInfo

# Values a collector reports when canvas/WebGL probing is unavailable
HEADLESS_WEBGL_VALUE = "disabled"
HEADLESS_CANVAS_VALUE = "blocked"


def fingerprint_from_dict(payload: Mapping[str, Any]) -> DeviceFingerprint:
    """
    Build a DeviceFingerprint from a client payload.

    Accepts both the camelCase keys sent by the browser collector and the
    snake_case keys produced by fingerprint_to_dict().

    Raises:
        ValueError: if a required field is missing
    """
    def pick(*names, default=None, required=False):
        for name in names:
            if name in payload:
                return payload[name]
        if required:
            raise ValueError(f"Fingerprint field missing: {names[0]}")
        return default

    screen_raw = pick("screen", required=True) or {}
    screen = ScreenInfo(
        width=int(screen_raw.get("width", 0)),
        height=int(screen_raw.get("height", 0)),
        color_depth=int(screen_raw.get("colorDepth", screen_raw.get("color_depth", 0))),
    )

    connection = None
    connection_raw = pick("connection")
    if connection_raw:
        connection = ConnectionInfo(
            effective_type=str(connection_raw.get("effectiveType", connection_raw.get("effective_type", ""))),
            downlink=float(connection_raw.get("downlink", 0.0)),
            rtt=int(connection_raw.get("rtt", 0)),
        )

    device_memory = pick("deviceMemory", "device_memory")

    return DeviceFingerprint(
        user_agent=str(pick("userAgent", "user_agent", required=True)),
        screen=screen,
        timezone=str(pick("timezone", default="")),
        language=str(pick("language", default="")),
        platform=str(pick("platform", default="")),
        cookie_enabled=bool(pick("cookieEnabled", "cookie_enabled", default=True)),
        do_not_track=pick("doNotTrack", "do_not_track"),
        hardware_concurrency=int(pick("hardwareConcurrency", "hardware_concurrency", default=0)),
        device_memory=float(device_memory) if device_memory is not None else None,
        connection=connection,
        canvas=pick("canvas"),
        webgl=pick("webgl"),
    )


def fingerprint_to_dict(fp: DeviceFingerprint) -> Dict[str, Any]:
    return asdict(fp)


def canonical_json(fp: DeviceFingerprint) -> str:
    """Key-sorted, whitespace-free JSON; the device identity."""
    return json.dumps(fingerprint_to_dict(fp), sort_keys=True, separators=(",", ":"))


def fingerprint_hash(fp: DeviceFingerprint) -> str:
    return hashlib.sha256(canonical_json(fp).encode("utf-8")).hexdigest()


def is_headless(fp: DeviceFingerprint) -> bool:
    return fp.webgl == HEADLESS_WEBGL_VALUE or fp.canvas == HEADLESS_CANVAS_VALUE
