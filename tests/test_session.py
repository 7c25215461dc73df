"""Tests for the Session library API."""

import pytest

from helios.errors import ConfigError
from helios.provider import Provider, ProviderResponse
from helios.session import Result, Session


class CountingProvider(Provider):
    name = "fake"
    model = "counter"

    def __init__(self):
        self.seen = []

    async def chat(self, messages, tools=None, options=None):
        self.seen.append((len(messages), options))
        return ProviderResponse(content=f"answer {len(self.seen)}")


def _session(tmp_path, **kwargs):
    return Session(
        base_dir=str(tmp_path),
        audit_log=str(tmp_path / "audit.jsonl"),
        streaming=False,
        backend=CountingProvider(),
        **kwargs,
    )


class TestSession:
    def test_run_is_independent(self, tmp_path):
        s = _session(tmp_path)
        first = s.run("one")
        second = s.run("two")
        assert isinstance(first, Result)
        assert first.answer == "answer 1"
        assert not first.exhausted
        # each run starts from system + user
        assert [n for n, _ in s.backend.seen] == [2, 2]
        assert second.messages[-2]["content"] == "two"

    def test_ask_shares_context(self, tmp_path):
        s = _session(tmp_path)
        s.ask("one")
        s.ask("two")
        assert [n for n, _ in s.backend.seen] == [2, 4]

    def test_result_messages_are_copies(self, tmp_path):
        s = _session(tmp_path)
        result = s.ask("one")
        result.messages.clear()
        assert len(s.messages) == 3

    def test_reset(self, tmp_path):
        s = _session(tmp_path)
        s.ask("one")
        s.supervisor.loop_detector.check("read_file", {})
        assert s.reset() == 2
        assert len(s.supervisor.loop_detector.history) == 0
        s.ask("two")
        assert s.backend.seen[-1][0] == 2

    def test_no_system_prompt(self, tmp_path):
        s = _session(tmp_path, no_system_prompt=True)
        result = s.ask("hi")
        assert result.messages[0]["role"] == "user"

    def test_custom_system_prompt(self, tmp_path):
        s = _session(tmp_path, system_prompt="Be terse.")
        assert s.ask("hi").messages[0] == {"role": "system", "content": "Be terse."}

    def test_default_system_prompt_mentions_directory(self, tmp_path):
        s = _session(tmp_path)
        system = s.ask("hi").messages[0]["content"]
        assert "Helios" in system
        assert str(tmp_path.resolve()) in system

    def test_options_passed_to_provider(self, tmp_path):
        s = _session(tmp_path, timeout_ms=1234, temperature=0.1, max_output_tokens=77)
        s.ask("hi")
        options = s.backend.seen[0][1]
        assert options.timeout_ms == 1234
        assert options.temperature == 0.1
        assert options.max_output_tokens == 77
        assert options.model == "counter"

    def test_toggle_auto_approve(self, tmp_path):
        s = _session(tmp_path)
        assert s.toggle_auto_approve() is True
        assert s.supervisor.permissions.auto_approve

    def test_auto_approve_flag(self, tmp_path):
        s = _session(tmp_path, auto_approve=True, block_medium_loops=True)
        s.setup()
        assert s.supervisor.permissions.auto_approve
        assert s.supervisor.block_medium_loops

    def test_echoes_stream(self, tmp_path):
        s = _session(tmp_path, verbose=True)
        assert not s.echoes_stream
        s.streaming = True
        assert s.echoes_stream

    def test_close_without_setup(self, tmp_path):
        _session(tmp_path).close()


def test_provider_resolution_errors(tmp_path, monkeypatch):
    for env in ("OPENROUTER_API_KEY", "ANTHROPIC_API_KEY", "OPENAI_API_KEY"):
        monkeypatch.delenv(env, raising=False)
    s = Session(base_dir=str(tmp_path), audit_log=str(tmp_path / "a.jsonl"))
    with pytest.raises(ConfigError):
        s.setup()
