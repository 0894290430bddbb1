from __future__ import annotations

import asyncio

import pytest

from multamind.agents import AgentError
from multamind.dispatcher import Dispatcher, parse_command
from multamind.models import Author, new_message, now_ms


@pytest.fixture
def dispatcher(gateway) -> Dispatcher:
    return Dispatcher(gateway)


def _user(text: str, ts: int | None = None):
    return new_message(Author.USER, text, ts)


def test_parse_command():
    assert parse_command("hello there") == (None, "hello there")
    assert parse_command("  /review gemini ") == ("/review", "gemini")
    assert parse_command("/summarize") == ("/summarize", "")


def test_plain_text_gets_one_reply_per_agent(dispatcher, completions):
    # a user message stamped in the future forces the replies to be ordered after it
    user = _user("hello", now_ms() + 60_000)
    outcome = asyncio.run(dispatcher.dispatch("hello", [user], "standard"))

    assert outcome.error is None
    assert [m.author for m in outcome.messages] == [Author.AGENT_A, Author.AGENT_B]
    assert sorted(completions.models) == ["gemini-std", "gpt-std"]
    assert all(m.created_at > user.created_at for m in outcome.messages)
    assert outcome.messages[0].created_at < outcome.messages[1].created_at
    assert not dispatcher.busy


def test_single_agent_commands_and_aliases(dispatcher, completions):
    history = [_user("/gemini what?")]
    outcome = asyncio.run(dispatcher.dispatch("/gemini what?", history))
    assert [m.author for m in outcome.messages] == [Author.AGENT_B]
    assert outcome.messages[0].content == "gemini-free: what?"

    outcome = asyncio.run(dispatcher.dispatch("/agentA why?", history))
    assert [m.author for m in outcome.messages] == [Author.AGENT_A]

    outcome = asyncio.run(dispatcher.dispatch("/GPT how?", history))
    assert [m.author for m in outcome.messages] == [Author.AGENT_A]
    assert completions.models == ["gemini-free", "gpt-free", "gpt-free"]


def test_single_agent_command_without_text_shows_usage(dispatcher, completions):
    outcome = asyncio.run(dispatcher.dispatch("/agentB", [_user("/agentB")]))
    assert outcome.messages[0].author == Author.MODERATOR
    assert outcome.messages[0].content == "Usage: /agentB <message>"
    assert completions.calls == []


def test_unknown_command_is_answered_by_moderator(dispatcher, completions):
    outcome = asyncio.run(dispatcher.dispatch("/dance now", [_user("/dance now")]))
    assert len(outcome.messages) == 1
    assert outcome.messages[0].author == Author.MODERATOR
    assert outcome.messages[0].content == "Unknown command: /dance"
    assert completions.calls == []


def test_summarize_without_replies_is_a_notice(dispatcher, completions):
    history = [_user("hi", 1), _user("/summarize", 2)]
    outcome = asyncio.run(dispatcher.dispatch("/summarize", history))
    assert len(outcome.messages) == 1
    assert outcome.messages[0].author == Author.MODERATOR
    assert "needed to summarize" in outcome.messages[0].content
    assert completions.calls == []


def test_summarize_with_both_replies(dispatcher, completions):
    history = [
        _user("hi", 1),
        new_message(Author.AGENT_A, "a", 2),
        new_message(Author.AGENT_B, "b", 3),
        _user("/summarize", 4),
    ]
    outcome = asyncio.run(dispatcher.dispatch("/summarize", history, "pro"))
    assert outcome.messages[0].author == Author.MODERATOR
    assert completions.models == ["multa-pro"]


def test_review_targets_agent_by_name(dispatcher, completions):
    history = [
        _user("hi", 1),
        new_message(Author.AGENT_A, "a", 2),
        new_message(Author.AGENT_B, "b", 3),
        _user("/review gemini", 4),
    ]
    outcome = asyncio.run(dispatcher.dispatch("/review gemini", history))
    assert [m.author for m in outcome.messages] == [Author.AGENT_A]
    assert completions.models == ["gpt-free"]
    assert outcome.messages[0].created_at > 4
    # the command itself is not mistaken for the question under review
    prompt = completions.calls[0]["messages"][0]["content"]
    assert "# Original question from the user\nhi\n" in prompt


def test_review_defaults_to_agent_a(dispatcher, completions):
    history = [_user("hi", 1), new_message(Author.AGENT_A, "a", 2), _user("/review", 3)]
    outcome = asyncio.run(dispatcher.dispatch("/review", history))
    assert [m.author for m in outcome.messages] == [Author.AGENT_B]
    assert completions.models == ["gemini-free"]


def test_failure_reports_error_and_clears_typing(dispatcher, completions):
    completions.fail_models.add("gemini-free")
    outcome = asyncio.run(dispatcher.dispatch("hello", [_user("hello")]))
    assert outcome.messages == []
    assert outcome.error == "Failed to get a response from the agents."
    assert dispatcher.typing == set()


def test_failing_agent_does_not_abandon_the_other_call(gateway):
    dispatcher = Dispatcher(gateway)
    finished = []

    async def fail_fast(text, plan=None):
        raise AgentError("gpt down")

    async def slow(text, plan=None):
        await asyncio.sleep(0.01)
        finished.append("agentB")
        return "late"

    gateway.ask_agent_a = fail_fast
    gateway.ask_agent_b = slow
    outcome = asyncio.run(dispatcher.dispatch("hello", [_user("hello")]))

    assert outcome.error == "Failed to get a response from the agents."
    assert finished == ["agentB"]
    assert not dispatcher.busy


def test_typing_is_set_while_the_call_is_in_flight(gateway):
    dispatcher = Dispatcher(gateway)
    seen = []

    async def slow_ask(author, text, plan=None):
        seen.append(set(dispatcher.typing))
        return "ok"

    gateway.ask = slow_ask
    asyncio.run(dispatcher.dispatch("/agentB hi", [_user("/agentB hi")]))
    assert seen == [{Author.AGENT_B}]
    assert not dispatcher.busy
