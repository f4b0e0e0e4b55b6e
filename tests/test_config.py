import pytest

from wbs_engine.core.config import DEFAULT_CONFIG, EngineConfig, load_and_merge, load_config_file, merged_config
from wbs_engine.core.errors import ConfigError


def test_defaults():
    assert load_and_merge(None) is DEFAULT_CONFIG
    assert DEFAULT_CONFIG.unscheduled_policy == "exclude"
    assert DEFAULT_CONFIG.progress_weighting == "equal"


def test_load_config_file(examples_dir):
    cfg = load_and_merge(str(examples_dir / "strict-config.yaml"))
    assert isinstance(cfg, EngineConfig)
    assert cfg.unscheduled_policy == "fail"
    assert cfg.progress_weighting == "duration"
    assert cfg.lock_timeout_s == 1.5
    assert cfg.max_critical_paths == DEFAULT_CONFIG.max_critical_paths


def test_empty_config_file(tmp_path):
    p = tmp_path / "empty.yaml"
    p.write_text("", encoding="utf-8")
    assert load_config_file(str(p)) == {}


@pytest.mark.parametrize(
    "text, code",
    [
        ("- not\n- a mapping\n", "E_CONFIG_INVALID"),
        ("surprise: 1\n", "E_CONFIG_UNKNOWN_KEY"),
        ("unscheduled_policy: sometimes\n", "E_CONFIG_INVALID"),
        ("lock_timeout_s: 0\n", "E_CONFIG_INVALID"),
        ("recompute_workers: true\n", "E_CONFIG_INVALID"),
        ("unscheduled_policy: [\n", "E_CONFIG_INVALID"),
    ],
)
def test_bad_config_files(tmp_path, text, code):
    p = tmp_path / "bad.yaml"
    p.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError) as exc:
        load_config_file(str(p))
    assert exc.value.code == code
    assert exc.value.file == str(p)


def test_merged_config_validates_overrides():
    assert merged_config({"sync_recompute_max_nodes": 0}).sync_recompute_max_nodes == 0
    with pytest.raises(ConfigError):
        merged_config({"max_critical_paths": 0})


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_and_merge(str(tmp_path / "nope.yaml"))
