"""Host-side one-shot calls to the ``claude`` CLI.

Used to polish a rough task description into a title and description and to
turn a title into a branch slug. Every call has a mechanical fallback, so a
missing or failing ``claude`` binary never blocks a flow.
"""

import re
import subprocess

import structlog

from cbox.config import settings

logger = structlog.get_logger(__name__)

MAX_TITLE_LENGTH = 70
MAX_SLUG_LENGTH = 40

POLISH_PROMPT = """\
Given this rough task description, generate a polished title (under 70 characters) and a clear, detailed description.

Rough input: {rough!r}

Reply in exactly this format (no extra text):
TITLE: <your title here>
DESCRIPTION: <your description here>"""

SLUG_PROMPT = (
    "Generate a short git branch name (2-4 words, lowercase, hyphen-separated) "
    "for this task: {title!r}. Reply with ONLY the branch name, nothing else."
)

SUMMARY_PROMPT = (
    "Summarize this task as a short issue title (under 70 characters, no quotes): "
    "{description!r}. Reply with ONLY the title, nothing else."
)


def ask_claude(prompt: str, model: str | None = None) -> str:
    """Run ``claude -p`` on the host; empty string on any failure."""
    try:
        result = subprocess.run(
            ["claude", "-p", prompt, "--model", model or settings.fast_model],
            capture_output=True,
            text=True,
            timeout=120,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("claude_call_failed", error=str(e))
        return ""
    if result.returncode != 0:
        logger.debug("claude_call_failed", exit_code=result.returncode)
        return ""
    return result.stdout.strip()


def parse_title_description(text: str) -> tuple[str, str]:
    """Extract ``TITLE:`` and ``DESCRIPTION:`` from model output.

    Returns ``("", "")`` when there is no ``TITLE:`` marker.
    """
    text = text.strip()
    start = text.find("TITLE:")
    if start < 0:
        return "", ""
    rest = text[start + len("TITLE:"):]
    marker = rest.find("DESCRIPTION:")
    if marker < 0:
        return rest.strip(), ""
    return rest[:marker].strip(), rest[marker + len("DESCRIPTION:"):].strip()


def fallback_summarize(description: str) -> str:
    if len(description) <= MAX_TITLE_LENGTH:
        return description
    head = description[:MAX_TITLE_LENGTH]
    cut = head.rfind(" ")
    return head[:cut] if cut > 20 else head


def summarize(description: str) -> str:
    """A short title for ``description``."""
    title = ask_claude(SUMMARY_PROMPT.format(description=description))
    if title and len(title) <= MAX_TITLE_LENGTH:
        return title
    return fallback_summarize(description)


def polish_task(rough: str) -> tuple[str, str]:
    """Turn a rough description into ``(title, description)``."""
    title, description = parse_title_description(ask_claude(POLISH_PROMPT.format(rough=rough)))
    if title and description:
        return title, description
    return summarize(rough), rough


def fallback_slugify(title: str) -> str:
    """First three words of the lowercased, hyphenated title."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return "-".join(slug.split("-")[:3])


def slugify(title: str) -> str:
    """A branch-safe slug for ``title``."""
    name = ask_claude(SLUG_PROMPT.format(title=title)).lower()
    name = re.sub(r"[^a-z0-9-]+", "", name).strip("-")
    if name and len(name) <= MAX_SLUG_LENGTH:
        return name
    return fallback_slugify(title)
