import json

from conversational_engine.config import EngineSettings, RegexReasoning, TokensReasoning


def test_from_env_defaults():
    settings = EngineSettings.from_env({})

    assert settings.models == []
    assert settings.tool_servers == []
    assert settings.abort_ttl_seconds == 30
    assert settings.keep_alive_interval == 0.1
    assert settings.legacy_padding is False
    assert settings.openai_base_url == "https://api.openai.com/v1"


def test_from_env_parses_models_and_servers():
    models = [
        {"id": "qwen", "reasoning": {"type": "tokens", "begin_token": "", "end_token": "</think>"}},
        {"id": "r1", "name": "R1", "reasoning": {"type": "regex", "regex": "Answer: (.*)"}},
        {"id": "plain", "system_role_supported": False, "parameters": {"stop": ["</s>"], "temperature": 0.2}},
    ]
    settings = EngineSettings.from_env(
        {
            "OPENAI_API_KEY": "sk-test",
            "OPENAI_BASE_URL": "http://localhost:8000/v1",
            "MODELS": json.dumps(models),
            "MCP_SERVERS": json.dumps([{"name": "docs", "url": "http://tools.test/mcp"}]),
            "REASONING_SUMMARY": "true",
            "ABORT_TTL_SECONDS": "5",
            "KEEP_ALIVE_INTERVAL": "0.5",
            "LEGACY_PADDING": "1",
        }
    )

    assert settings.get_model("qwen").reasoning == TokensReasoning(begin_token="")
    assert isinstance(settings.get_model("r1").reasoning, RegexReasoning)
    assert settings.get_model("r1").display_name == "R1"
    assert settings.get_model("plain").system_role_supported is False
    assert settings.get_model("plain").parameters.stop == ["</s>"]
    assert settings.get_model("missing") is None
    assert settings.tool_servers[0].name == "docs"
    assert settings.reasoning_summary is True
    assert settings.abort_ttl_seconds == 5
    assert settings.keep_alive_interval == 0.5
    assert settings.legacy_padding is True


def test_invalid_json_lists_are_ignored():
    settings = EngineSettings.from_env({"MODELS": "not json", "MCP_SERVERS": '[{"url": "missing name"}]'})
    assert settings.models == []
    assert settings.tool_servers == []


def test_from_env_parses_skill_settings():
    settings = EngineSettings.from_env(
        {"ENABLE_SKILLS": "true", "SKILLS_PATH": "/srv/skills", "ENABLED_SKILLS": "code-review, haiku-writer,"}
    )

    assert settings.enable_skills is True
    assert settings.skills_path == "/srv/skills"
    assert settings.enabled_skills == ["code-review", "haiku-writer"]
    assert EngineSettings.from_env({}).enable_skills is False
