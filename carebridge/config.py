"""
Coordination Settings -- Deployment Configuration for CareBridge.

Every ledger reads its windows and limits from a single validated
``CoordinationSettings`` object instead of module constants, so that a
deployment can shorten invite expiry for a pilot, raise the maximum call
length for a group session, or disable conferencing entirely when no
meeting backend is contracted.

Settings are plain pydantic models.  They can be built in code or loaded
from a YAML file with ``load_settings_from_yaml``.
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------

class CoordinationSettings(BaseModel):
    """Windows, limits and URLs used by the ledgers."""

    app_url: str = Field(
        default="http://localhost:5000",
        min_length=1,
        description="Public base URL used to build invite and link URLs.",
    )
    survey_base_url: str = Field(
        default="https://redcap.link/CarebridgeAI",
        min_length=1,
        description=(
            "Base URL of the external survey form.  The survey request id is "
            "appended as a query parameter so completions can be matched back."
        ),
    )
    invite_expiry_days: int = Field(
        default=7,
        gt=0,
        description="How long a patient-to-patient invite stays acceptable.",
    )
    resend_resets_expiry: bool = Field(
        default=True,
        description=(
            "Whether resending a pending invite extends its expiry window.  "
            "The invite token is never rotated on resend."
        ),
    )
    link_token_expiry_days: int = Field(
        default=365,
        gt=0,
        description="Lifetime of a doctor's QR / link token.",
    )
    default_duration_minutes: int = Field(default=30, gt=0)
    max_duration_minutes: int = Field(
        default=240,
        gt=0,
        description="Upper bound on a scheduled session's duration.",
    )
    connecting_timeout_seconds: int = Field(
        default=1800,
        gt=0,
        description=(
            "A session still CONNECTING after this long is ended with "
            "PROVIDER_TIMEOUT by the stale sweep."
        ),
    )
    live_max_seconds: int = Field(
        default=7200,
        gt=0,
        description="A LIVE session older than this is ended as STALE.",
    )
    conferencing_enabled: bool = Field(
        default=True,
        description="Request a meeting reference when a session is scheduled.",
    )

    @field_validator("app_url", "survey_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("max_duration_minutes")
    @classmethod
    def max_above_default(cls, v: int, info) -> int:
        default = info.data.get("default_duration_minutes")
        if default is not None and v < default:
            raise ValueError(
                f"max_duration_minutes ({v}) must be >= default_duration_minutes ({default})"
            )
        return v

    @field_validator("live_max_seconds")
    @classmethod
    def live_above_connecting(cls, v: int, info) -> int:
        connecting = info.data.get("connecting_timeout_seconds")
        if connecting is not None and v < connecting:
            raise ValueError(
                f"live_max_seconds ({v}) must be >= connecting_timeout_seconds ({connecting})"
            )
        return v

    def invite_url(self, token: str) -> str:
        return f"{self.app_url}/invite/{token}"

    def link_url(self, token: str) -> str:
        return f"{self.app_url}/link/{token}"

    def survey_url(self, survey_id: str) -> str:
        return f"{self.survey_base_url}?survey={survey_id}"


DEFAULT_SETTINGS = CoordinationSettings()
"""Built-in settings: 7-day invites, 1-year link tokens, 30-minute calls."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_settings_from_yaml(path: str | Path) -> CoordinationSettings:
    """Load coordination settings from a YAML file.

    The file must contain a top-level ``settings`` mapping.  Keys that are
    omitted keep their defaults.

    Example YAML structure::

        settings:
          app_url: "https://care.example.org"
          invite_expiry_days: 14
          conferencing_enabled: false

    Args:
        path: Path to the YAML file.

    Returns:
        A validated ``CoordinationSettings`` instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If a setting fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "settings" not in raw:
        raise ValueError("YAML file must contain a top-level 'settings' mapping.")

    data = raw["settings"]
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("'settings' must be a mapping of setting names to values.")

    return CoordinationSettings(**data)
