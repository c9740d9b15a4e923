"""Prompt builders for the OpenAI enrichment stages."""

from __future__ import annotations

import json
from textwrap import dedent
from typing import Any, Dict, List, Optional

SYSTEM_PROMPT = (
    "You are a customer support analyst. You read customer feedback and return "
    "strictly valid JSON matching the requested shape, with no commentary."
)

SENTIMENT_PROMPT_TEMPLATE = dedent(
    """
    Classify the sentiment of the customer feedback below.

    **Rules:**
    - label must be one of: positive, neutral, negative
    - score is your confidence between 0 and 1 with two decimal precision

    Return JSON: {{"label": "negative", "score": 0.87}}

    Feedback:
    \"\"\"{text}\"\"\"
    """
).strip()

SUMMARY_PROMPT_TEMPLATE = dedent(
    """
    Summarise the customer feedback below in at most two sentences. Keep product
    names and concrete problems; drop greetings and filler.

    The feedback was classified as {sentiment_label}.

    Return JSON: {{"summary": "..."}}

    Feedback:
    \"\"\"{text}\"\"\"
    """
).strip()

REPLY_PROMPT_TEMPLATE = dedent(
    """
    Draft a short, friendly reply to the customer feedback below.

    **Guidelines:**
    - Acknowledge the customer's point in the first sentence
    - Match the tone to the {sentiment_label} sentiment
    - Use the knowledge-base articles when they answer the question; cite them by id
    - Never promise refunds, dates or features

    Summary: {summary}

    Knowledge-base matches:
    {kb_matches}

    Return JSON: {{"content": "..."}}

    Feedback:
    \"\"\"{text}\"\"\"
    """
).strip()


def build_sentiment_prompt(text: str) -> str:
    return SENTIMENT_PROMPT_TEMPLATE.format(text=text)


def build_summary_prompt(text: str, sentiment_label: str) -> str:
    return SUMMARY_PROMPT_TEMPLATE.format(text=text, sentiment_label=sentiment_label)


def build_reply_prompt(
    text: str,
    *,
    sentiment_label: str,
    summary: Optional[str],
    kb_matches: List[Dict[str, Any]],
) -> str:
    rendered_matches = json.dumps(kb_matches, indent=2) if kb_matches else "none"
    return REPLY_PROMPT_TEMPLATE.format(
        text=text,
        sentiment_label=sentiment_label,
        summary=summary or "n/a",
        kb_matches=rendered_matches,
    )
