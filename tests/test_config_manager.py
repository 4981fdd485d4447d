"""
Triage policy configuration tests
"""

import pytest
import yaml

from helpdesk.core import ConfigurationException
from helpdesk.triage.domain import TriageConfig
from helpdesk.triage.infrastructure import TriageConfigManager


class TestTriageConfig:

    def test_defaults(self):
        config = TriageConfig()
        assert config.auto_close_enabled is True
        assert config.confidence_threshold == 0.78
        assert config.sla_hours == 24

    def test_threshold_bounds(self):
        with pytest.raises(ValueError):
            TriageConfig(confidence_threshold=1.5)

    def test_snapshot_is_immutable(self):
        config = TriageConfig()
        with pytest.raises(ValueError):
            config.confidence_threshold = 0.1


class TestTriageConfigManager:

    def test_missing_file_uses_defaults(self, tmp_path):
        manager = TriageConfigManager()

        config = manager.load(tmp_path / "missing.yaml")

        assert config == TriageConfig()
        assert manager.get_config() == TriageConfig()

    def test_unloaded_manager_returns_defaults(self):
        assert TriageConfigManager().get_config() == TriageConfig()

    def test_loads_yaml(self, tmp_path):
        path = tmp_path / "triage_config.yaml"
        path.write_text("auto_close_enabled: false\nconfidence_threshold: 0.9\n")
        manager = TriageConfigManager()

        manager.load(path)

        config = manager.get_config()
        assert config.auto_close_enabled is False
        assert config.confidence_threshold == 0.9
        assert config.sla_hours == 24

    def test_invalid_file_on_load_raises(self, tmp_path):
        path = tmp_path / "triage_config.yaml"
        path.write_text("confidence_threshold: 7\n")

        with pytest.raises(ConfigurationException):
            TriageConfigManager().load(path)

    def test_reload_picks_up_changes(self, tmp_path):
        path = tmp_path / "triage_config.yaml"
        path.write_text("confidence_threshold: 0.5\n")
        manager = TriageConfigManager()
        manager.load(path)

        path.write_text("confidence_threshold: 0.6\n")

        assert manager.reload() is True
        assert manager.get_config().confidence_threshold == 0.6

    def test_invalid_reload_keeps_previous_policy(self, tmp_path):
        path = tmp_path / "triage_config.yaml"
        path.write_text("confidence_threshold: 0.5\n")
        manager = TriageConfigManager()
        manager.load(path)

        path.write_text("confidence_threshold: [not, a, number]\n")

        assert manager.reload() is False
        assert manager.get_config().confidence_threshold == 0.5

    def test_update_persists_to_file(self, tmp_path):
        path = tmp_path / "triage_config.yaml"
        path.write_text("confidence_threshold: 0.5\n")
        manager = TriageConfigManager()
        manager.load(path)

        updated = manager.update(auto_close_enabled=False)

        assert updated.auto_close_enabled is False
        assert updated.confidence_threshold == 0.5
        assert yaml.safe_load(path.read_text()) == {
            "auto_close_enabled": False,
            "confidence_threshold": 0.5,
            "sla_hours": 24
        }

    def test_invalid_update_is_rejected(self, tmp_path):
        manager = TriageConfigManager()
        manager.load(tmp_path / "missing.yaml")

        with pytest.raises(ConfigurationException):
            manager.update(confidence_threshold=-1)
        assert manager.get_config() == TriageConfig()

    def test_snapshot_unaffected_by_later_update(self, tmp_path):
        manager = TriageConfigManager()
        manager.load(tmp_path / "missing.yaml")
        snapshot = manager.get_config()

        manager.update(confidence_threshold=0.95)

        assert snapshot.confidence_threshold == 0.78
        assert manager.get_config().confidence_threshold == 0.95

    def test_watching_requires_load(self):
        with pytest.raises(RuntimeError):
            TriageConfigManager().start_watching()

    def test_watching_missing_file_is_skipped(self, tmp_path):
        manager = TriageConfigManager()
        manager.load(tmp_path / "missing.yaml")

        manager.start_watching()
        manager.stop_watching()
