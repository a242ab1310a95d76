from __future__ import annotations

import pytest

from agent_gateway.commands import AGENT_POLICIES, build_agent_command
from agent_gateway.models import MessageRequest
from agent_gateway.sessions import AgentSession

_CONTINUATION_MARKERS = {"--continue", "--resume", "--session", "resume"}

_EXPECTED_EXECUTABLES = {
    "claude": "claude",
    "claude-code": "claude",
    "opencode": "opencode",
    "goose": "goose",
    "codex": "codex",
    "cursor": "cursor-agent",
    "cursor-agent": "cursor-agent",
}


def _req(agent: str, message: str = "hello there", model: str = "") -> MessageRequest:
    return MessageRequest(message=message, agent=agent, model=model)


@pytest.mark.parametrize("agent", sorted(_EXPECTED_EXECUTABLES))
def test_fresh_turn_has_no_continuation(agent: str) -> None:
    _, args = build_agent_command(_req(agent), AgentSession())
    assert not (_CONTINUATION_MARKERS & set(args)), args


@pytest.mark.parametrize("agent", sorted(_EXPECTED_EXECUTABLES))
@pytest.mark.parametrize("token", [None, "sess-42"])
def test_later_turn_has_continuation(agent: str, token: str | None) -> None:
    _, args = build_agent_command(_req(agent), AgentSession(message_count=3, session_id=token))
    assert _CONTINUATION_MARKERS & set(args), args
    if token:
        assert token in args


@pytest.mark.parametrize("agent,executable", sorted(_EXPECTED_EXECUTABLES.items()))
def test_known_agents_use_table_executable(agent: str, executable: str) -> None:
    for sess in (AgentSession(), AgentSession(message_count=1)):
        bin_, _ = build_agent_command(_req(agent), sess)
        assert bin_ == executable


def test_table_covers_expected_agents() -> None:
    assert set(AGENT_POLICIES) == set(_EXPECTED_EXECUTABLES)


@pytest.mark.parametrize("agent", ["aider", "my-agent", "/usr/local/bin/custom"])
def test_unknown_agent_is_its_own_binary(agent: str) -> None:
    for sess in (AgentSession(), AgentSession(message_count=5, session_id="x")):
        bin_, args = build_agent_command(_req(agent, message="do the thing"), sess)
        assert bin_ == agent
        assert args == ["do the thing"]


def test_claude_fresh_invocation_shape() -> None:
    bin_, args = build_agent_command(_req("claude", message="hi", model="opus"), AgentSession())
    assert bin_ == "claude"
    assert args == [
        "--print", "hi",
        "--verbose",
        "--output-format", "stream-json",
        "--include-partial-messages",
        "--model", "opus",
    ]


def test_claude_continue_vs_resume() -> None:
    _, cont = build_agent_command(_req("claude"), AgentSession(message_count=1))
    assert cont[-1] == "--continue"
    _, resumed = build_agent_command(_req("claude"), AgentSession(message_count=1, session_id="abc"))
    assert resumed[-2:] == ["--resume", "abc"]


def test_goose_resume_uses_session_subcommand() -> None:
    _, args = build_agent_command(_req("goose", message="next"), AgentSession(message_count=2, session_id="g1"))
    assert args == ["session", "resume", "g1", "--message", "next"]
    _, fresh = build_agent_command(_req("goose", message="first"), AgentSession())
    assert fresh == ["run", "--text", "first"]


def test_codex_model_and_message_order() -> None:
    _, fresh = build_agent_command(_req("codex", message="m", model="o3"), AgentSession())
    assert fresh == ["--model", "o3", "m"]
    _, cont = build_agent_command(_req("codex", message="m"), AgentSession(message_count=1))
    assert cont == ["resume", "--last", "m"]


def test_builder_is_deterministic() -> None:
    req = _req("opencode")
    sess = AgentSession(message_count=1, session_id="s")
    assert build_agent_command(req, sess) == build_agent_command(req, sess)
