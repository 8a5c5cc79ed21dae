"""Tests for settings loading and per-session stream config."""

import pytest

from cadence.core.conversation import StreamContext
from cadence.providers import build_registry
from cadence.streaming.config import HumanizerDegree, StreamConfig
from cadence.utils.config import Settings


def test_defaults_match_delivery_constants():
    streaming = Settings().streaming
    assert streaming.max_message_length == 1950
    assert streaming.flush_buffer_size == 500
    assert streaming.flush_buffer_size_code_block == 15000
    assert streaming.inactivity_timeout_seconds == 120.0


def test_from_yaml_with_env_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_SLACK_TOKEN", "xoxb-test")
    config_file = tmp_path / "settings.yaml"
    config_file.write_text(
        "streaming:\n"
        "  humanizer_degree: 3\n"
        "  flush_buffer_size: 300\n"
        "llm:\n"
        "  provider: ollama\n"
        "channels:\n"
        "  slack:\n"
        "    bot_token: ${TEST_SLACK_TOKEN}\n"
    )
    settings = Settings.from_yaml(config_file)
    assert settings.streaming.humanizer_degree == 3
    assert settings.streaming.flush_buffer_size == 300
    assert settings.llm.provider == "ollama"
    assert settings.channels.slack.bot_token == "xoxb-test"


def test_env_defaults_and_embedded_references(tmp_path, monkeypatch):
    monkeypatch.delenv("CADENCE_TEST_MISSING", raising=False)
    monkeypatch.setenv("CADENCE_TEST_HOST", "gpu-box")
    config_file = tmp_path / "settings.yaml"
    config_file.write_text(
        "llm:\n"
        "  provider: ${CADENCE_TEST_MISSING:-ollama}\n"
        "  ollama:\n"
        "    base_url: http://${CADENCE_TEST_HOST}:11434\n"
    )
    settings = Settings.from_yaml(config_file)
    assert settings.llm.provider == "ollama"
    assert settings.llm.ollama.base_url == "http://gpu-box:11434"


@pytest.mark.parametrize(
    "yaml_text,message",
    [
        ("streaming:\n  flush_buffer_size: 900\n  flush_buffer_size_code_block: 800\n", "flush_buffer_size_code_block"),
        ("streaming:\n  min_typing_ms: 5000\n", "min_typing_ms"),
        ("streaming:\n  min_pause_ms: 2000\n", "min_pause_ms"),
        ("llm:\n  provider: gemini\n", "llm.provider"),
    ],
)
def test_validation_rejects_inconsistent_values(tmp_path, yaml_text, message):
    config_file = tmp_path / "settings.yaml"
    config_file.write_text(yaml_text)
    with pytest.raises(ValueError) as excinfo:
        Settings.from_yaml(config_file)
    assert message in str(excinfo.value)


def test_stream_config_from_settings_converts_units():
    settings = Settings()
    config = StreamConfig.from_settings(settings, humanizer_degree=2)

    assert config.humanizer_degree == HumanizerDegree.MEDIUM
    assert config.pacing.enabled is True
    assert config.pacing.per_char_delay == pytest.approx(0.010)
    assert config.pacing.min_visible_duration == pytest.approx(0.75)
    assert config.pacing.max_typing_time == pytest.approx(4.0)
    assert config.buffer.sentence_flush is False
    assert config.inactivity_timeout == 120.0


def test_heavy_degree_enables_sentence_flush_by_default():
    config = StreamConfig.from_settings(Settings(), humanizer_degree=3)
    assert config.buffer.sentence_flush is True


def test_explicit_sentence_flush_wins():
    settings = Settings()
    settings.streaming.sentence_flush = True
    config = StreamConfig.from_settings(settings, humanizer_degree=0)
    assert config.pacing.enabled is False
    assert config.buffer.sentence_flush is True


def test_overrides_apply():
    config = StreamConfig.from_settings(Settings(), model="claude-test", temperature=0.2)
    assert config.model == "claude-test"
    assert config.temperature == 0.2


@pytest.mark.parametrize("provider,key", [("anthropic", "anthropic"), ("nim", "nvidia"), ("local", "ollama")])
def test_provider_temperature_comes_from_settings(provider, key):
    settings = Settings()
    getattr(settings.llm, key).temperature = 0.2
    adapter = build_registry().create(provider, settings)

    request = adapter.build_request(StreamConfig.from_settings(settings), StreamContext())
    temperature = request["options"]["temperature"] if key == "ollama" else request["temperature"]
    assert temperature == 0.2

    override = adapter.build_request(StreamConfig.from_settings(settings, temperature=0.9), StreamContext())
    temperature = override["options"]["temperature"] if key == "ollama" else override["temperature"]
    assert temperature == 0.9
