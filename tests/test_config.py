"""Tests for config.yaml loading and prompt construction."""

from datetime import date

import pytest

from Devotional_Generator import (
    DevotionalAutomation,
    DevotionalGenerator,
    build_config,
    load_config,
    moon_phase,
    season_for,
)
from content_tracker import ContentLedger, SimilarTitle
from helpers import CONTENT_A, CONTENT_B, TODAY, candidate, days_ago, record


class TestLoadConfig:
    """Test YAML loading and preflight checks."""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")
        assert config.run.max_attempts == 3
        assert config.novelty.scripture_lookback_days == 21
        assert [p.name for p in config.llm.providers] == ["groq", "openai", "deepseek"]

    def test_yaml_values_are_applied(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "run_config:\n  max_attempts: 5\n  hemisphere: Southern\n"
            "llm_config:\n  providers:\n"
            "    - name: local\n      base_url: http://localhost:8000/v1\n"
            "      model: tiny\n      api_key_env: LOCAL_KEY\n      temperature: 0.4\n"
            "novelty_config:\n  scripture_policy: warn\n  title_threshold: 0.8\n",
            encoding="utf-8",
        )
        config = load_config(path)
        assert config.run.max_attempts == 5
        assert config.run.hemisphere == "Southern"
        assert len(config.llm.providers) == 1
        assert config.llm.providers[0].temperature == 0.4
        assert config.novelty.scripture_policy == "warn"
        assert config.novelty.title_threshold == 0.8

    def test_empty_provider_list_is_allowed(self):
        assert build_config({"llm_config": {"providers": []}}).llm.providers == ()

    @pytest.mark.parametrize("raw", [
        {"novelty_config": {"title_threshold": 1.5}},
        {"novelty_config": {"content_threshold": -0.1}},
        {"novelty_config": {"scripture_policy": "ignore"}},
        {"novelty_config": {"ledger_window": 0}},
        {"run_config": {"max_attempts": 0}},
        {"llm_config": {"max_tries": 0}},
        {"llm_config": {"timeout_seconds": 0}},
        {"run_config": {"max_attemps": 3}},
        {"run_config": ["not", "a", "mapping"]},
        {"llm_config": {"providers": [{"name": "groq", "model": "m", "api_key_env": "K"}]}},
        {"llm_config": {"providers": [
            {"name": "a", "base_url": "u", "model": "m", "api_key_env": "K"},
            {"name": "a", "base_url": "u", "model": "m", "api_key_env": "K"},
        ]}},
    ])
    def test_invalid_config_is_critical(self, raw):
        with pytest.raises(ValueError, match="CRITICAL"):
            build_config(raw)


class TestPromptBuilding:
    """Test the prompt sent to providers."""

    def generator(self, make_config, **overrides):
        config = make_config(**overrides)
        automation = DevotionalAutomation(config.run.base_path, config.run.output_dir, debug=False)
        return DevotionalGenerator(config, automation)

    def test_temperature_rises_per_attempt_up_to_cap(self, make_config):
        gen = self.generator(make_config)
        assert gen.temperature_for(1) == pytest.approx(0.95)
        assert gen.temperature_for(2) == pytest.approx(1.0)
        assert gen.temperature_for(50) == pytest.approx(1.3)

    def test_recent_titles_and_scriptures_are_listed(self, make_config):
        ledger = ContentLedger.load([
            record(days_ago(2), "Stars of Hope", CONTENT_A, "Psalm 19:1"),
            record(days_ago(1), "Bread for Today", CONTENT_B, "Matthew 6:11"),
        ], debug=False)
        prompt = self.generator(make_config).build_prompt(TODAY, ledger)
        assert '- "Stars of Hope"' in prompt.user
        assert '- "Bread for Today"' in prompt.user
        assert "Psalm 19:1; Matthew 6:11" in prompt.user
        assert TODAY.isoformat() in prompt.user
        assert "ATTEMPT #" not in prompt.user

    def test_retry_prompt_carries_hint_and_rejected_title(self, make_config):
        ledger = ContentLedger.load([record(days_ago(2), "Stars of Hope", CONTENT_A)], debug=False)
        reason = SimilarTitle(0.8, days_ago(2), "Stars of Hope")
        rejected = [candidate("Hope Among the Stars", CONTENT_B, "Romans 8:28")]
        prompt = self.generator(make_config).build_prompt(TODAY, ledger, 3, reason, rejected)
        assert "ATTEMPT #3" in prompt.user
        assert reason.hint() in prompt.user
        assert '- "Hope Among the Stars"' in prompt.user
        assert "Romans 8:28" in prompt.user

    def test_recent_rejections_become_pitfalls(self, make_config):
        gen = self.generator(make_config)
        gen.automation.record_rejection(days_ago(1), 1, "groq", "content 80% similar to 2024-06-20",
                                        {"kind": "similar_content"})
        gen.automation.record_rejection(days_ago(1), 2, None, "all providers failed",
                                        {"kind": "all_providers_failed"})
        prompt = gen.build_prompt(TODAY, ContentLedger.load([], debug=False))
        assert "content 80% similar to 2024-06-20" in prompt.user
        assert "all providers failed" not in prompt.user

    def test_voice_file_becomes_system_prompt(self, make_config, tmp_path):
        (tmp_path / "VOICE.md").write_text("Speak like a lighthouse keeper.", encoding="utf-8")
        gen = self.generator(make_config, run_config={"voice_file": "VOICE.md"})
        assert gen.build_prompt(TODAY, ContentLedger.load([], debug=False)).system == \
            "Speak like a lighthouse keeper."


class TestSkyFlavour:
    """Test the season and moon helpers used for prompt colour."""

    def test_seasons_flip_by_hemisphere(self):
        assert season_for(TODAY) == "Summer"
        assert season_for(TODAY, "Southern") == "Winter"

    def test_known_new_moon(self):
        assert moon_phase(date(2000, 1, 6)) == "New Moon"
