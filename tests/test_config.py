"""
Tests for carebridge.config -- Coordination Settings.

Covers: defaults, field validation, cross-field ordering, URL helpers, and
YAML loading (valid, partial, missing file, bad structure, bundled sample).
"""

from pathlib import Path

import pytest
import yaml

from carebridge.config import (
    DEFAULT_SETTINGS,
    CoordinationSettings,
    load_settings_from_yaml,
)


# ---------------------------------------------------------------------------
# 1. Defaults
# ---------------------------------------------------------------------------

class TestDefaultSettings:
    def test_default_windows(self):
        assert DEFAULT_SETTINGS.invite_expiry_days == 7
        assert DEFAULT_SETTINGS.link_token_expiry_days == 365
        assert DEFAULT_SETTINGS.default_duration_minutes == 30
        assert DEFAULT_SETTINGS.resend_resets_expiry is True

    def test_default_timeouts_are_ordered(self):
        assert DEFAULT_SETTINGS.live_max_seconds >= DEFAULT_SETTINGS.connecting_timeout_seconds


# ---------------------------------------------------------------------------
# 2. Validation
# ---------------------------------------------------------------------------

class TestSettingsValidation:
    def test_invite_expiry_must_be_positive(self):
        with pytest.raises(Exception):
            CoordinationSettings(invite_expiry_days=0)

    def test_empty_app_url_rejected(self):
        with pytest.raises(Exception):
            CoordinationSettings(app_url="")

    def test_max_duration_below_default_rejected(self):
        with pytest.raises(Exception):
            CoordinationSettings(default_duration_minutes=60, max_duration_minutes=45)

    def test_live_max_below_connecting_timeout_rejected(self):
        with pytest.raises(Exception):
            CoordinationSettings(connecting_timeout_seconds=600, live_max_seconds=300)

    def test_trailing_slash_stripped(self):
        settings = CoordinationSettings(app_url="https://care.example.org/")
        assert settings.app_url == "https://care.example.org"


# ---------------------------------------------------------------------------
# 3. URL helpers
# ---------------------------------------------------------------------------

class TestURLHelpers:
    def test_invite_url(self):
        settings = CoordinationSettings(app_url="https://care.example.org")
        assert settings.invite_url("tok") == "https://care.example.org/invite/tok"

    def test_link_url(self):
        settings = CoordinationSettings(app_url="https://care.example.org")
        assert settings.link_url("tok") == "https://care.example.org/link/tok"

    def test_survey_url_carries_request_id(self):
        settings = CoordinationSettings(survey_base_url="https://forms.example.org/s/")
        assert settings.survey_url("abc") == "https://forms.example.org/s?survey=abc"


# ---------------------------------------------------------------------------
# 4. YAML loader
# ---------------------------------------------------------------------------

class TestYAMLLoader:
    def _write_yaml(self, data: dict, tmp_dir: Path) -> Path:
        path = tmp_dir / "settings.yaml"
        with open(path, "w") as f:
            yaml.dump(data, f)
        return path

    def test_load_valid_yaml(self, tmp_path):
        path = self._write_yaml(
            {"settings": {"app_url": "https://pilot.example.org", "invite_expiry_days": 14}},
            tmp_path,
        )
        settings = load_settings_from_yaml(path)
        assert settings.app_url == "https://pilot.example.org"
        assert settings.invite_expiry_days == 14
        assert settings.default_duration_minutes == 30

    def test_empty_settings_block_gives_defaults(self, tmp_path):
        path = self._write_yaml({"settings": None}, tmp_path)
        assert load_settings_from_yaml(path) == CoordinationSettings()

    def test_load_nonexistent_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_settings_from_yaml("/nonexistent/path.yaml")

    def test_load_invalid_structure_raises(self, tmp_path):
        path = self._write_yaml({"not_settings": {}}, tmp_path)
        with pytest.raises(ValueError, match="top-level 'settings'"):
            load_settings_from_yaml(path)

    def test_settings_must_be_mapping(self, tmp_path):
        path = self._write_yaml({"settings": ["a", "b"]}, tmp_path)
        with pytest.raises(ValueError, match="must be a mapping"):
            load_settings_from_yaml(path)

    def test_invalid_value_raises_validation_error(self, tmp_path):
        path = self._write_yaml({"settings": {"invite_expiry_days": -1}}, tmp_path)
        with pytest.raises(Exception):
            load_settings_from_yaml(path)

    def test_load_bundled_sample_settings(self):
        """The example settings file shipped with the repo loads cleanly."""
        sample_path = Path(__file__).parent.parent / "examples" / "coordination_settings.yaml"
        settings = load_settings_from_yaml(sample_path)
        assert settings.conferencing_enabled is True
        assert settings.max_duration_minutes >= settings.default_duration_minutes
