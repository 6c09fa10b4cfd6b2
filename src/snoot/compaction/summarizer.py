"""Rolling-summary summarisers used by context compaction.

A summariser is an async callable taking the fully rendered compaction prompt
and returning the new rolling summary. Two backends exist:

* **cli** — pipes the prompt into a fast model CLI (``claude -p --model haiku``)
  and reads its stdout. This is the default since the bridge already depends
  on the CLI being installed.
* **litellm** — calls ``litellm.acompletion`` directly for setups where the
  CLI is not available but API credentials are.

Setting ``SNOOT_MOCK_LLM=1`` replaces either backend with a deterministic
bullet-list summary so examples and tests run without network access.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable

import structlog

from snoot.errors import CompactionError
from snoot.models.config import CompactionConfig
from snoot.models.context import MessagePair

Summarizer = Callable[[str], Awaitable[str]]

logger = structlog.get_logger("snoot.compaction.summarizer")

COMPACTION_PROMPT = """\
Summarize this conversation history into a concise rolling summary. Preserve:
- All code snippets and file paths mentioned
- Decisions made and their reasoning
- Key technical facts and requirements
- Any tasks in progress or planned

Discard:
- Pleasantries and small talk
- Redundant explanations
- Rejected alternatives (unless the rejection reason is important)

If there is a current summary, integrate the new messages into it rather than starting fresh.

"""


def format_for_compaction(pairs: list[MessagePair], current_summary: str) -> str:
    """Render the evicted pairs (and the summary they merge into) as summariser input."""
    sections: list[str] = []
    if current_summary:
        sections.append(f"<current_summary>\n{current_summary}\n</current_summary>\n\n")
    sections.append("<messages_to_compact>\n")
    for pair in pairs:
        sections.append(f"User: {pair.user}\nAssistant: {pair.assistant}\n\n")
    sections.append("</messages_to_compact>")
    return "".join(sections)


def build_compaction_prompt(pairs: list[MessagePair], current_summary: str) -> str:
    """Full prompt handed to the summariser."""
    return COMPACTION_PROMPT + format_for_compaction(pairs, current_summary)


def make_summarizer(config: CompactionConfig) -> Summarizer:
    """Return the summariser selected by *config*."""

    async def _call(prompt: str) -> str:
        if os.environ.get("SNOOT_MOCK_LLM") == "1":
            return _mock_summary(prompt)
        if config.summarizer == "litellm":
            text = await _litellm_summary(prompt, config)
        else:
            text = await _cli_summary(prompt, config)
        text = text.strip()
        if not text:
            raise CompactionError("summariser returned an empty summary")
        return text

    return _call


async def _cli_summary(prompt: str, config: CompactionConfig) -> str:
    env = dict(os.environ)
    env.pop("CLAUDECODE", None)
    try:
        proc = await asyncio.create_subprocess_exec(
            *config.cli_command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as exc:
        raise CompactionError(f"cannot start summariser {config.cli_command[0]!r}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(prompt.encode()), timeout=config.timeout
        )
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise CompactionError(f"summariser timed out after {config.timeout:.0f}s") from exc

    if proc.returncode != 0:
        detail = stderr.decode(errors="replace").strip()[:200]
        raise CompactionError(f"summariser exited with code {proc.returncode}: {detail}")
    return stdout.decode(errors="replace")


async def _litellm_summary(prompt: str, config: CompactionConfig) -> str:
    import litellm

    try:
        response = await asyncio.wait_for(
            litellm.acompletion(
                model=config.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=config.max_tokens,
                temperature=0.2,
            ),
            timeout=config.timeout,
        )
    except asyncio.TimeoutError as exc:
        raise CompactionError(f"summariser timed out after {config.timeout:.0f}s") from exc
    except Exception as exc:
        raise CompactionError(f"litellm summariser failed: {exc}") from exc
    return response.choices[0].message.content or ""


def _mock_summary(prompt: str) -> str:
    summary = ""
    if "<current_summary>" in prompt:
        summary = prompt.split("<current_summary>")[1].split("</current_summary>")[0].strip()
    body = ""
    if "<messages_to_compact>" in prompt:
        body = prompt.split("<messages_to_compact>")[1].split("</messages_to_compact>")[0]
    users = [ln[len("User: ") :].strip() for ln in body.splitlines() if ln.startswith("User: ")]
    bullets = "\n".join(f"- {u[:120]}" for u in users) or "- (nothing new)"
    return (summary + "\n" if summary else "") + bullets
