from __future__ import annotations

import asyncio

from multamind.models import Author, new_message
from multamind.review import (
    SUMMARY_HEADER,
    build_review_prompt,
    last_by_author,
    review,
    summarize,
    summary_notice,
)


def _history():
    return [
        new_message(Author.USER, "What is 2+2?", 1),
        new_message(Author.AGENT_A, "It is 4.", 2),
        new_message(Author.AGENT_B, "Four.", 3),
        new_message(Author.USER, "And 3+3?", 4),
        new_message(Author.AGENT_A, "It is 6.", 5),
    ]


def test_last_by_author_picks_most_recent():
    history = _history()
    assert last_by_author(history, Author.AGENT_A).content == "It is 6."
    assert last_by_author(history, "user").content == "And 3+3?"
    assert last_by_author(history, Author.MODERATOR) is None


def test_review_prompt_mentions_both_sides():
    prompt = build_review_prompt("Q", "target says", None, target=Author.AGENT_A)
    assert prompt.startswith("You are **Gemini**, reviewing GPT's latest answer.")
    assert "target says" in prompt
    assert "_No previous Gemini answer was found in this thread._" in prompt


def test_review_is_written_by_the_other_agent(gateway, completions):
    msg = asyncio.run(review(_history(), Author.AGENT_A, gateway))
    assert msg.author == Author.AGENT_B
    assert completions.models == ["gemini-free"]
    prompt = completions.calls[0]["messages"][0]["content"]
    assert "And 3+3?" in prompt
    assert "It is 6." in prompt
    assert "Four." in prompt


def test_review_without_target_answer_skips_the_model(gateway, completions):
    history = [new_message(Author.USER, "hello", 1), new_message(Author.AGENT_A, "hi", 2)]
    msg = asyncio.run(review(history, Author.AGENT_B, gateway))
    assert msg.author == Author.AGENT_A
    assert msg.content == "I cannot find the last Gemini answer to review."
    assert completions.calls == []


def test_summarize_uses_moderator_and_header(gateway, completions):
    msg = asyncio.run(summarize(_history(), gateway, "pro"))
    assert msg.author == Author.MODERATOR
    assert msg.content.startswith(SUMMARY_HEADER + "\n\n")
    assert completions.models == ["multa-pro"]
    prompt = completions.calls[0]["messages"][1]["content"]
    assert "It is 6." in prompt and "Four." in prompt


def test_summarize_needs_both_agents(gateway, completions):
    history = [new_message(Author.USER, "hello", 1), new_message(Author.AGENT_A, "hi", 2)]
    msg = asyncio.run(summarize(history, gateway))
    assert msg.author == Author.MODERATOR
    assert msg.content == summary_notice()
    assert completions.calls == []
