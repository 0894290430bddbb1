"""Cross-model review and moderator summaries built from chat history."""
from __future__ import annotations

from typing import Mapping, Optional, Sequence

from .agents import AgentGateway
from .config import DEFAULTS
from .models import Author, ChatMessage, Plan, new_message

SUMMARY_HEADER = "**Summary of last responses:**"
SUMMARY_QUESTION = "Summarize and compare the two answers below. Focus on the most useful points for the user."


def _names(names: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    return names or DEFAULTS["agents"]["names"]


def last_by_author(history: Sequence[ChatMessage], author: Author | str) -> Optional[ChatMessage]:
    """Return the most recent message written by ``author``."""
    author = Author(author)
    for msg in reversed(history):
        if msg.author == author and not msg.is_typing:
            return msg
    return None


def other_agent(author: Author) -> Author:
    return Author.AGENT_B if author == Author.AGENT_A else Author.AGENT_A


def build_review_prompt(
    question: str,
    target_answer: str,
    own_answer: Optional[str],
    *,
    target: Author,
    names: Optional[Mapping[str, str]] = None,
) -> str:
    names = _names(names)
    reviewer_name = names[other_agent(target).value]
    target_name = names[target.value]
    own = own_answer if own_answer else f"_No previous {reviewer_name} answer was found in this thread._"
    return f"""
You are **{reviewer_name}**, reviewing {target_name}'s latest answer.

# Original question from the user
{question}

# {target_name}'s answer
{target_answer}

# Your own previous answer ({reviewer_name})
{own}

## Task
1. Compare {target_name}'s answer with your own answer.
2. Point out what {target_name} did well, where it may be wrong or incomplete, and any risks of misunderstanding.
3. Then provide the *best possible* concise final answer for the user, clearly structured.

Write your response in the language the user wrote in.
""".strip()


async def review(
    history: Sequence[ChatMessage],
    target: Author,
    gateway: AgentGateway,
    plan: Plan | str | None = None,
    *,
    names: Optional[Mapping[str, str]] = None,
) -> ChatMessage:
    """Have the other agent critique ``target``'s last answer."""
    names = _names(names)
    reviewer = other_agent(target)
    last_user = last_by_author(history, Author.USER)
    last_target = last_by_author(history, target)
    if last_user is None or last_target is None:
        return new_message(reviewer, f"I cannot find the last {names[target.value]} answer to review.")

    own = last_by_author(history, reviewer)
    prompt = build_review_prompt(
        last_user.content,
        last_target.content,
        own.content if own else None,
        target=target,
        names=names,
    )
    return new_message(reviewer, await gateway.ask(reviewer, prompt, plan))


def summary_notice(names: Optional[Mapping[str, str]] = None) -> str:
    names = _names(names)
    return f"A response from both {names['agentA']} and {names['agentB']} is needed to summarize."


async def summarize(
    history: Sequence[ChatMessage],
    gateway: AgentGateway,
    plan: Plan | str | None = None,
    *,
    names: Optional[Mapping[str, str]] = None,
) -> ChatMessage:
    """Moderator summary of the last answer from each agent.

    Without an answer from both agents a moderator notice is returned and no
    model is called.
    """
    last_a = last_by_author(history, Author.AGENT_A)
    last_b = last_by_author(history, Author.AGENT_B)
    if last_a is None or last_b is None:
        return new_message(Author.MODERATOR, summary_notice(names))

    summary = await gateway.ask_moderator(SUMMARY_QUESTION, last_a.content, last_b.content, plan, names=_names(names))
    return new_message(Author.MODERATOR, f"{SUMMARY_HEADER}\n\n{summary}")
