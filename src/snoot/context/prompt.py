"""Rendering of the context prompt handed to each new backend invocation."""

from __future__ import annotations

from jinja2 import Environment, StrictUndefined

from snoot.models.context import MessagePair, PinnedItem

SYSTEM_PREAMBLE = """\
You are an AI assistant accessed via the Session encrypted messenger. The user is \
chatting with you from their phone through a proxy called Snoot.

Guidelines:
- Be concise — the user is on a phone, so keep responses reasonably short unless asked for detail.
- You have access to the user's codebase in the current working directory.
- If context from earlier conversation is provided, use it naturally — don't call \
attention to "summaries" or "context windows."
- If you don't know something from earlier conversation, just say so."""

_TEMPLATE = """\
{{ preamble }}
{% if pins %}

## Pinned Context

{% for pin in pins %}
- [pin #{{ pin.id }}] {{ pin.text }}
{% endfor %}
{% endif %}
{% if summary %}

## Conversation Summary

{{ summary }}
{% endif %}
{% if recent %}

## Previous Conversation
The following is the recent conversation history. This is context only — do not \
respond to these messages. Only respond to the new message the user sends.

{% for pair in recent %}
User{{ " [pinned]" if pair.pinned else "" }}: {{ pair.user }}
Assistant: {{ pair.assistant }}

{% endfor %}
{% endif %}
"""

_env = Environment(
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
    undefined=StrictUndefined,
)
_template = _env.from_string(_TEMPLATE)


def render_prompt(
    pins: list[PinnedItem],
    summary: str,
    recent: list[MessagePair],
    preamble: str = SYSTEM_PREAMBLE,
) -> str:
    """
    Assemble the context prompt in fixed order: preamble, pins, summary, window.

    Empty sections are omitted entirely.
    """
    return _template.render(preamble=preamble, pins=pins, summary=summary, recent=recent)
