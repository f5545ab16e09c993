"""Tests for settings helpers."""

from photo_agent.config import Settings, parse_term_list


def test_parse_term_list() -> None:
    assert parse_term_list(None) is None
    assert parse_term_list(" , ") is None
    assert parse_term_list("Pop, moody,pop") == ("pop", "moody")


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("PLANNER_KIND", "llm")
    monkeypatch.setenv("PREVIEW_MAX_PIXELS", "800")

    settings = Settings(_env_file=None)

    assert settings.planner_kind == "llm"
    assert settings.preview_max_pixels == 800
    assert settings.planner_max_calls == 6
