"""System prompt for the agent.

Tools describe themselves through their descriptors; the prompt does not
list them so the two cannot drift apart.
"""

from datetime import datetime

_SYSTEM_PROMPT_TEMPLATE = """\
You are a helpful assistant. Today's date is {date}.

Use the available tools when a question needs live data. If a tool
reports an error, say so plainly instead of guessing the answer.
Keep answers short and cite the tool output you relied on.
"""


def get_system_prompt(*, date: datetime | None = None) -> str:
    """Render the system prompt for ``date`` (defaults to now)."""
    effective_date = date or datetime.now()
    return _SYSTEM_PROMPT_TEMPLATE.format(date=effective_date.strftime("%Y-%m-%d"))
