import asyncio
import json
import logging
import re
from typing import List, Optional

from app.core.errors import OptionsParseError
from app.models.tree import BranchOptions, SessionTitle

logger = logging.getLogger(__name__)

OPTION_COUNT = 4
DEFAULT_TITLE = "New Session"

TITLE_SYSTEM_PROMPT = (
    "You are a naming assistant that crafts concise, intriguing brainstorming session titles. "
    "Respond with a single title no longer than six words."
)

OPTIONS_SYSTEM_PROMPT = (
    "You help product teams explore creative directions through branching prompts. "
    "Given the user's latest prompt (and optional context), respond with a JSON object: "
    "{\"options\": [string, string, string, string]} "
    "Each string should be an evocative, specific angle or framing. Keep them under 12 words. "
    "Do not add numbering or commentary. Output ONLY the JSON object."
)


def sanitise_single_line(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def build_branching_user_message(prompt: str, node_title: Optional[str] = None, breadcrumb: Optional[List[str]] = None) -> str:
    lines = []
    if breadcrumb:
        lines.append(f"Previous selections: {' → '.join(breadcrumb)}")
    if node_title:
        lines.append(f"Current option title: {node_title}")
    lines.append(f"User prompt: {prompt}")
    return "\n".join(lines)


def parse_options_payload(payload: str) -> List[str]:
    """Turn raw model output into exactly four cleaned option strings.

    Accepts a bare JSON object or one wrapped in markdown fences or chatter.
    """
    try:
        json_match = re.search(r"\{.*\}", payload, re.DOTALL)
        if not json_match:
            raise ValueError("No JSON object in response.")
        result = json.loads(json_match.group(0))
        if not isinstance(result, dict) or not isinstance(result.get("options"), list):
            raise ValueError("Missing options array.")

        options = [item.strip() if isinstance(item, str) else "" for item in result["options"]]
        options = [item for item in options if item]
        if len(options) != OPTION_COUNT:
            raise ValueError(f"Expected {OPTION_COUNT} option strings, got {len(options)}.")
        return [sanitise_single_line(item) for item in options]
    except (ValueError, json.JSONDecodeError) as e:
        raise OptionsParseError(f"Failed to parse options payload: {e}") from e


def parse_title(payload: str) -> str:
    title = sanitise_single_line(payload.splitlines()[0] if payload.strip() else "")
    title = title.strip("\"'“”` ")
    return title or DEFAULT_TITLE


class PromptGenerator:
    """Generation service: four branch options or a session title per call.

    ``llm_service`` is anything with an async ``complete(user_id, prompt)``
    returning a ``Completion``.
    """

    def __init__(self, llm_service):
        self.llm_service = llm_service

    async def generate_branch_options(self, prompt: str, node_title: Optional[str] = None, breadcrumb: Optional[List[str]] = None, user_id: str = "branching") -> BranchOptions:
        message = build_branching_user_message(prompt, node_title, breadcrumb)
        completion = await self.llm_service.complete(user_id, f"{OPTIONS_SYSTEM_PROMPT}\n\n{message}")
        options = parse_options_payload(completion.text)
        logger.debug("Generated options for %r: %s", prompt[:40], options)
        return BranchOptions(options=options, tokens=completion.tokens)

    async def generate_session_title(self, prompt: str, user_id: str = "branching") -> SessionTitle:
        message = f"Prompt or theme: {prompt}\n\nReturn only the title text. Do not include quotes or explanations."
        completion = await self.llm_service.complete(user_id, f"{TITLE_SYSTEM_PROMPT}\n\n{message}")
        return SessionTitle(title=parse_title(completion.text), tokens=completion.tokens)

    async def generate_session_seed(self, prompt: str, user_id: str = "branching"):
        """Title and first options for a new session, generated concurrently."""
        title, options = await asyncio.gather(
            self.generate_session_title(prompt, user_id=user_id),
            self.generate_branch_options(prompt, user_id=user_id),
        )
        return title, options
