"""
Engine configuration.

Values are resolved from the built-in defaults, then the named profile in
``configs/profiles.yaml``, then ``LIVESTAGE_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"
ENV_PREFIX = "LIVESTAGE_"

LOG = logging.getLogger(__name__)


def _default_stun_servers() -> List[str]:
    return [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:global.stun.twilio.com:3478",
    ]


@dataclass
class EngineConfig:
    """Top level configuration for one participant client."""

    profile: str = "default"

    relay_url: str = "ws://127.0.0.1:8765/ws"
    api_base_url: str = "http://127.0.0.1:5000/api"

    stun_servers: List[str] = field(default_factory=_default_stun_servers)
    turn_url: Optional[str] = None
    turn_username: Optional[str] = None
    turn_credential: Optional[str] = None

    mutation_timeout: float = 5.0
    chat_page_size: int = 50

    chunk_size: int = 16384
    pacing_every: int = 10
    pacing_delay: float = 0.01

    reconnect_attempts: int = 5
    reconnect_delay: float = 1.0
    send_queue_size: int = 256

    frame_rate: int = 30
    watermark_text: Optional[str] = None
    segment_seconds: float = 1.0
    recordings_dir: Path = Path("recordings")
    downloads_dir: Path = Path("downloads")

    display_device: Optional[str] = None
    display_format: Optional[str] = None
    system_audio_device: Optional[str] = None
    microphone_device: Optional[str] = None
    audio_format: Optional[str] = None

    @classmethod
    def load(
        cls,
        profile: str = "default",
        *,
        path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "EngineConfig":
        values: Dict[str, Any] = {}
        values.update(load_profile(profile, path=path))
        values.update(_read_environment(os.environ if environ is None else environ))
        values["profile"] = profile
        return cls.from_mapping(values)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "EngineConfig":
        known = {item.name: item for item in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, raw in values.items():
            name = key.replace("-", "_")
            if name not in known:
                LOG.warning("Ignoring unknown config key '%s'", key)
                continue
            kwargs[name] = _coerce(name, raw, getattr(cls(), name))
        return cls(**kwargs)


def load_profile(profile: str, *, path: Optional[Path] = None) -> Dict[str, Any]:
    profiles_path = path or PROFILES_PATH
    try:
        with profiles_path.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.debug("No profiles file at %s", profiles_path)
        return {}
    selected = profiles.get(profile)
    if selected is None:
        if profile != "default":
            LOG.warning("Profile '%s' not found in %s; using defaults", profile, profiles_path)
        return {}
    if not isinstance(selected, dict):
        raise ValueError(f"profile '{profile}' must be a mapping")
    return dict(selected)


def _read_environment(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, raw in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name == "profile":
            continue
        values[name] = raw
    return values


def _coerce(name: str, raw: Any, default: Any) -> Any:
    if raw is None:
        return None
    if isinstance(default, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in {"1", "true", "yes", "on"}
        return bool(raw)
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, Path):
        return Path(raw).expanduser()
    if isinstance(default, list):
        if isinstance(raw, str):
            return [item.strip() for item in raw.split(",") if item.strip()]
        return list(raw)
    if name in {"recordings_dir", "downloads_dir"}:
        return Path(raw).expanduser()
    return raw
