"""YAML configuration loading, validation and round trip"""

from pathlib import Path

import pytest
import yaml

from config.config import (
    CeremonyConfig,
    ConfigurationError,
    SetupConfig,
    ToolConfig,
    config_from_dict,
    load_config,
    save_config,
)


class TestDefaults:
    def test_setup_defaults(self):
        config = SetupConfig()
        assert config.ceremony_dir == Path("powersOfTau")
        assert config.build_root == Path("circuits/build")
        assert config.keys_subdir == "keys"
        assert config.atomic_finalize is True
        assert config.keep_intermediates is False
        assert config.manifest_name == "setup_manifest.json"

    def test_tool_defaults(self):
        tools = ToolConfig()
        assert tools.compile_flags == ["--r1cs", "--wasm", "--sym"]
        assert tools.curve == "bn128"
        assert tools.tool_timeout == 7200.0
        assert tools.challenge_timeout is None

    def test_ceremony_defaults(self):
        ceremony = CeremonyConfig()
        assert ceremony.phase1_labels == ["First contribution", "Second contribution", "Third contribution"]
        assert ceremony.phase2_beacon_name == "Final Beacon phase2"
        assert ceremony.beacon_iterations == 10
        assert len(bytes.fromhex(ceremony.beacon_hash)) == 31

    def test_paths_resolve_against_root(self, tmp_path):
        config = SetupConfig(root_dir=tmp_path)
        assert config.ceremony_path == tmp_path / "powersOfTau"
        assert config.build_path == tmp_path / "circuits" / "build"
        absolute = SetupConfig(root_dir=tmp_path, ceremony_dir=tmp_path / "shared")
        assert absolute.ceremony_path == tmp_path / "shared"

    def test_default_root_gives_absolute_paths(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = SetupConfig()
        assert config.ceremony_path == Path.cwd() / "powersOfTau"
        assert config.build_path == Path.cwd() / "circuits" / "build"
        assert config.log_path.is_absolute()


class TestValidation:
    @pytest.mark.parametrize("kwargs", [
        {"phase1_labels": ["only one"]},
        {"beacon_hash": "xyz"},
        {"beacon_hash": "abc"},
        {"beacon_iterations": 64},
        {"entropy_bytes": 8},
        {"response_mode": "carrier-pigeon"},
        {"response_poll_interval": 0},
    ])
    def test_bad_ceremony_values(self, kwargs):
        with pytest.raises(ConfigurationError):
            CeremonyConfig(**kwargs)

    def test_bad_timeout(self):
        with pytest.raises(ConfigurationError):
            ToolConfig(tool_timeout=0)

    def test_bad_log_level(self):
        with pytest.raises(ConfigurationError):
            SetupConfig(log_level="LOUD")

    def test_unknown_top_level_key(self):
        with pytest.raises(ConfigurationError, match="ceremony_dri"):
            config_from_dict({"ceremony_dri": "typo"})

    def test_unknown_section_key(self):
        with pytest.raises(ConfigurationError, match="snarkjs"):
            config_from_dict({"tools": {"snarkjs": "/usr/bin/snarkjs"}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ConfigurationError):
            config_from_dict({"tools": ["circom"]})


class TestLoadSave:
    def test_default_path_absent(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert load_config() == SetupConfig()

    def test_default_path_present(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config.yaml").write_text("keep_intermediates: true\n")
        assert load_config().keep_intermediates is True

    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(ConfigurationError, match="does not exist"):
            load_config(tmp_path / "missing.yaml")

    def test_empty_file_means_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == SetupConfig()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("tools: [unclosed\n")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_top_level_list(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(path)

    def test_nested_sections(self, tmp_path):
        path = tmp_path / "setup.yaml"
        path.write_text(yaml.safe_dump({
            "build_root": "out",
            "tools": {"snarkjs_bin": "/opt/snarkjs/cli.js", "include_paths": ["node_modules"]},
            "ceremony": {"response_mode": "external", "response_timeout": 600},
        }))
        config = load_config(path)
        assert config.build_root == Path("out")
        assert config.tools.snarkjs_bin == "/opt/snarkjs/cli.js"
        assert config.tools.include_paths == [Path("node_modules")]
        assert config.ceremony.response_mode == "external"
        assert config.ceremony.response_timeout == 600

    def test_round_trip(self, tmp_path):
        config = SetupConfig(keep_intermediates=True, tools=ToolConfig(tool_timeout=60.0))
        path = save_config(config, tmp_path / "nested" / "config.yaml")
        assert path.exists()
        assert load_config(path) == config
