from callnote import config
from callnote.models import Config


def test_load_default_config_when_missing(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)

    cfg = config.load_config()
    assert isinstance(cfg, Config)
    assert cfg.asr_model == "paraformer-v2"
    assert cfg.poll_max_attempts == 60
    assert cfg.demo_fallback is True


def test_save_and_load_config(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)

    cfg = Config(llm_model="gpt-4o-mini", poll_interval=0.5)
    config.save_config(cfg)

    loaded = config.load_config()
    assert loaded.llm_model == "gpt-4o-mini"
    assert loaded.poll_interval == 0.5


def test_update_config_validates_keys(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)

    config.update_config(feishu_table_id="tbl123")
    loaded = config.load_config()
    assert loaded.feishu_table_id == "tbl123"

    try:
        config.update_config(unknown="value")
    except config.ConfigError:
        pass
    else:
        raise AssertionError("Expected ConfigError for invalid key")


def test_environment_overrides_file(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)
    config.save_config(Config(dashscope_api_key="from-file"))
    monkeypatch.setenv("CALLNOTE_DASHSCOPE_API_KEY", "from-env")

    assert config.load_config().dashscope_api_key == "from-env"

    config.update_config(llm_model="other")
    # The override must not be written back to disk.
    assert config.load_config(apply_env=False).dashscope_api_key == "from-file"


def test_unknown_key_in_file_is_rejected(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text('{"backend": "whisper"}')
    monkeypatch.setattr(config, "CONFIG_PATH", cfg_path)

    try:
        config.load_config()
    except config.ConfigError as exc:
        assert "backend" in str(exc)
    else:
        raise AssertionError("Expected ConfigError for unknown key")
