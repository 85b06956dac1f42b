"""Tests for config loading and NFS share parsing."""
import pytest

from sharesync.config import ConfigLoader, ConfigValidationError
from sharesync.config.share_parser import ShareParser


def write_config(tmp_path, text):
    path = tmp_path / "sharesync.yml"
    path.write_text(text)
    return path


class TestShareParser:
    def test_disabled_forms(self):
        assert ShareParser.parse_nfs(None, "tank/media") == {}
        assert ShareParser.parse_nfs(False, "tank/media") == {}

    def test_true_gives_default_export(self):
        exports = ShareParser.parse_nfs(True, "tank/media")

        assert list(exports) == ["default"]
        assert exports["default"].to_options() == {
            "clients": "*", "options": "rw,sync,no_subtree_check"
        }

    def test_mapping_form(self):
        exports = ShareParser.parse_nfs({"clients": "10.0.0.0/24", "options": "ro"}, "tank/media")

        assert exports["default"].clients == "10.0.0.0/24"
        assert exports["default"].options == "ro"

    def test_list_form(self):
        exports = ShareParser.parse_nfs(
            [
                {"name": "lan", "clients": "192.168.1.0/24"},
                {"name": "backup", "clients": "backup.example.com", "options": "ro, sync"},
            ],
            "tank/media",
        )

        assert sorted(exports) == ["backup", "lan"]
        assert exports["backup"].options == "ro,sync"

    def test_list_entries_need_names(self):
        with pytest.raises(ConfigValidationError, match="needs a name"):
            ShareParser.parse_nfs([{"clients": "a"}, {"clients": "b"}], "tank/media")

    def test_duplicate_names_rejected(self):
        with pytest.raises(ConfigValidationError, match="Duplicate"):
            ShareParser.parse_nfs([{"name": "lan"}, {"name": "lan"}], "tank/media")

    def test_invalid_options_rejected(self):
        with pytest.raises(ConfigValidationError, match="tank/media"):
            ShareParser.parse_nfs({"options": "rw;reboot"}, "tank/media")

    def test_unknown_field_rejected(self):
        with pytest.raises(ConfigValidationError):
            ShareParser.parse_nfs({"clients": "*", "squash": "all"}, "tank/media")

    def test_unsupported_type_rejected(self):
        with pytest.raises(ConfigValidationError, match="Expected true"):
            ShareParser.parse_nfs("yes", "tank/media")

    def test_path_key_is_deprecated(self):
        with pytest.warns(DeprecationWarning):
            exports = ShareParser.parse_nfs({"path": "/tank/media"}, "tank/media")
        assert list(exports) == ["default"]


class TestConfigLoader:
    def test_loads_pools_and_service(self, tmp_path):
        path = write_config(tmp_path, """
service:
  nfs:
    enabled: false
pools:
  tank:
    datasets:
      media:
        shares:
          nfs: true
      backups:
        shares:
          nfs:
            - name: offsite
              clients: 203.0.113.5
      scratch: {}
""")

        state = ConfigLoader(str(path)).load()

        assert state.service_enabled is False
        assert state.dataset_identities() == ["tank/backups", "tank/media", "tank/scratch"]
        assert list(state.exports_for("tank", "backups")) == ["offsite"]
        assert state.exports_for("tank", "scratch") == {}
        assert state.source == str(path)

    def test_service_defaults_to_enabled(self, tmp_path):
        path = write_config(tmp_path, "pools:\n  tank: {}\n")

        state = ConfigLoader(str(path)).load()

        assert state.service_enabled is True
        assert state.pools == {"tank": {}}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigLoader(str(tmp_path / "missing.yml")).load()

    def test_empty_file(self, tmp_path):
        path = write_config(tmp_path, "")
        with pytest.raises(ConfigValidationError, match="empty"):
            ConfigLoader(str(path)).load()

    def test_invalid_yaml(self, tmp_path):
        path = write_config(tmp_path, "pools: [unclosed\n")
        with pytest.raises(ConfigValidationError, match="not valid YAML"):
            ConfigLoader(str(path)).load()

    def test_non_boolean_service_flag(self, tmp_path):
        path = write_config(tmp_path, "service:\n  nfs:\n    enabled: maybe\n")
        with pytest.raises(ConfigValidationError, match="service.nfs.enabled"):
            ConfigLoader(str(path)).load()

    def test_bad_dataset_name(self, tmp_path):
        path = write_config(tmp_path, "pools:\n  tank:\n    datasets:\n      /media: {}\n")
        with pytest.raises(ConfigValidationError, match="Invalid dataset name"):
            ConfigLoader(str(path)).load()

    def test_to_dict_round_trips_options(self, tmp_path):
        path = write_config(tmp_path, "pools:\n  tank:\n    datasets:\n      media:\n        shares:\n          nfs: {options: ro}\n")

        state = ConfigLoader(str(path)).load()

        assert state.to_dict()["pools"]["tank"]["media"] == {
            "default": {"clients": "*", "options": "ro"}
        }
