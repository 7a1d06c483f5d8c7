"""Engine configuration.

All thresholds and caps live in a single ``EngineConfig`` dataclass. Values
can be overridden from a YAML file; the ``VIGIL_CONFIG`` environment variable
names the file used when no explicit path is given.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

import yaml

DEFAULT_NAMESPACE = "MOD"

CONFIG_ENV_VAR = "VIGIL_CONFIG"


@dataclass
class EngineConfig:
    """Tunable parameters for the stores and the coordinator."""

    # Reports
    report_expiry_days: float = 7.0
    trusted_reviewers: list[str] = field(default_factory=list)

    # Subscriptions
    max_labelers: int = 20
    max_mute_lists: int = 20

    # Label consensus
    moderation_namespaces: list[str] = field(default_factory=lambda: [DEFAULT_NAMESPACE])
    label_blur_threshold: int = 1
    label_hide_threshold: int = 3
    label_blur_confidence: float = 0.5
    label_hide_confidence: float = 0.8

    # Mutes
    personal_mute_confidence: float = 1.0
    subscribed_mute_confidence: float = 0.7

    # Merge
    conflict_penalty: float = 0.2
    degraded_penalty: float = 0.1

    # Built-in safety list
    blocked_hashes: list[str] = field(default_factory=list)
    blocked_keywords: list[str] = field(default_factory=list)

    def validate(self) -> None:
        """Raise ``ValueError`` if any value is out of range."""
        if self.report_expiry_days <= 0:
            raise ValueError("report_expiry_days must be positive")
        if self.max_labelers < 1 or self.max_mute_lists < 1:
            raise ValueError("subscription caps must be at least 1")
        if self.label_blur_threshold < 1:
            raise ValueError("label_blur_threshold must be at least 1")
        if self.label_hide_threshold < self.label_blur_threshold:
            raise ValueError("label_hide_threshold must not be below label_blur_threshold")
        for name in (
            "label_blur_confidence",
            "label_hide_confidence",
            "personal_mute_confidence",
            "subscribed_mute_confidence",
            "conflict_penalty",
            "degraded_penalty",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if not self.moderation_namespaces:
            raise ValueError("at least one moderation namespace is required")

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load an ``EngineConfig`` from YAML.

    Falls back to ``$VIGIL_CONFIG`` and then to the built-in defaults.
    Unknown keys are ignored.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or None
    if path is None:
        config = EngineConfig()
        config.validate()
        return config

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(EngineConfig)}
    config = EngineConfig(**{k: v for k, v in data.items() if k in known})
    config.validate()
    return config
