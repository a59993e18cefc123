"""Tests for host settings and the project file model."""

from __future__ import annotations

from pathlib import Path

import pytest

from pinforge.config import ForgeSettings
from pinforge.core.assembly import check_relocatable
from pinforge.core.errors import ConfigError
from pinforge.models.components import ComponentKind
from pinforge.models.config import ProjectConfig

EXAMPLE = Path(__file__).resolve().parents[2] / "pinforge.example.toml"


def _minimal(**extra) -> dict:
    data = {
        "project": {"name": "demo", "version": "2.0"},
        "artifacts": [{"name": "src", "url": "file:///src.tar.gz", "hash": "ab" * 32}],
        "components": [{"name": "server", "kind": "service", "source": "src"}],
    }
    data.update(extra)
    return data


class TestForgeSettings:
    def test_defaults(self):
        s = ForgeSettings()
        assert s.max_workers == 4
        assert s.persist_cache is True
        assert s.sandbox == "auto"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PINFORGE_MAX_WORKERS", "8")
        monkeypatch.setenv("PINFORGE_SANDBOX", "none")
        monkeypatch.setenv("PINFORGE_LOG_LEVEL", "DEBUG")
        s = ForgeSettings()
        assert s.max_workers == 8
        assert s.sandbox == "none"
        assert s.log_level == "DEBUG"

    def test_invalid_sandbox_mode(self, monkeypatch):
        monkeypatch.setenv("PINFORGE_SANDBOX", "docker")
        with pytest.raises(ValueError):
            ForgeSettings()


class TestProjectConfig:
    def test_example_file_loads(self):
        config = ProjectConfig.from_toml(EXAMPLE)
        assert config.name == "example-suite"
        assert config.registry_url == "https://deps.example.org/index"
        assert [c.name for c in config.components] == ["server", "client"]
        assert config.components[0].dependencies[0].version == "v0.21.0"
        assert config.toolchain.root_env_var == "GOROOT"
        assert config.assembly.credentials.days == 3650
        assert len(config.assembly.rewrites) == 4
        assert config.extension_sets[0].name == "extenders"

    def test_example_archive_is_relocatable(self):
        config = ProjectConfig.from_toml(EXAMPLE)
        assert config.assembly.archive is True
        assert config.assembly.install_prefix == "/opt/suite"
        check_relocatable(config.assembly, config.assembly.archive)

    def test_example_client_builds_in_source_root(self):
        client = ProjectConfig.from_toml(EXAMPLE).components[1]
        assert client.build_dir == ""
        assert client.outputs[0].path == "build/suite-client"

    def test_project_table_flattened(self):
        config = ProjectConfig.from_mapping(_minimal())
        assert (config.name, config.version) == ("demo", "2.0")
        assert config.components[0].kind == ComponentKind.SERVICE
        assert config.components[0].optional is False

    def test_missing_file(self, tmp_dir):
        with pytest.raises(ConfigError, match="not found"):
            ProjectConfig.from_toml(tmp_dir / "nope.toml")

    def test_unparseable_file(self, tmp_dir):
        bad = tmp_dir / "bad.toml"
        bad.write_text("[[artifacts]\nname = ")
        with pytest.raises(ConfigError, match="Cannot parse"):
            ProjectConfig.from_toml(bad)

    def test_unknown_artifact_reference(self):
        data = _minimal(components=[{"name": "s", "kind": "service", "source": "missing"}])
        with pytest.raises(ConfigError, match="unknown artifact"):
            ProjectConfig.from_mapping(data)

    def test_duplicate_artifacts(self):
        ref = {"name": "src", "url": "file:///a", "hash": ""}
        with pytest.raises(ConfigError, match="duplicate artifact"):
            ProjectConfig.from_mapping(_minimal(artifacts=[ref, ref]))

    def test_extension_components_must_come_from_sets(self):
        data = _minimal(components=[{"name": "e", "kind": "extension", "source": "src"}])
        with pytest.raises(ConfigError, match="extension_sets"):
            ProjectConfig.from_mapping(data)

    def test_assembly_entry_for_unknown_component(self):
        data = _minimal(assembly={"templates": [{"component": "ghost", "path": "p.json"}]})
        with pytest.raises(ConfigError, match="ghost"):
            ProjectConfig.from_mapping(data)

    def test_config_is_frozen(self):
        config = ProjectConfig.from_mapping(_minimal())
        with pytest.raises(ValueError):
            config.name = "other"

    def test_with_pins(self):
        config = ProjectConfig.from_mapping(_minimal())
        pinned = config.with_pins({"src": "cd" * 32})
        assert pinned.artifact("src").hash == "cd" * 32
        assert config.artifact("src").hash == "ab" * 32

    def test_with_pins_unknown(self):
        config = ProjectConfig.from_mapping(_minimal())
        with pytest.raises(ConfigError):
            config.with_pins({"nope": "cd" * 32})

    def test_artifact_lookup(self):
        config = ProjectConfig.from_mapping(_minimal())
        with pytest.raises(KeyError):
            config.artifact("nope")
