import asyncio
import json
import logging
import os
import re
import shutil
from typing import AsyncGenerator, Dict, List, Optional

from app.core import config
from app.core.errors import GenerationError
from app.models.tree import Completion

logger = logging.getLogger(__name__)

FALLBACK_MODELS = {
    "gemini-3-pro-preview": "gemini-3-flash-preview",
    "gemini-2.5-pro": "gemini-2.5-flash",
    "gemini-1.5-pro": "gemini-1.5-flash"
}

CAPACITY_KEYWORDS = ["429", "capacity", "quota", "exhausted", "rate limit"]


def is_capacity_error(text: str) -> bool:
    text = text.lower()
    return any(k in text for k in CAPACITY_KEYWORDS)


def extract_token_count(stats: Dict) -> int:
    """Total tokens from a ``result`` event's stats block.

    Newer CLI builds nest usage per model under ``models``; older ones report
    ``total_tokens`` at the top level.
    """
    if not isinstance(stats, dict):
        return 0
    if isinstance(stats.get("total_tokens"), int):
        return stats["total_tokens"]
    total = 0
    for model_stats in (stats.get("models") or {}).values():
        tokens = model_stats.get("tokens", {}) if isinstance(model_stats, dict) else {}
        if isinstance(tokens.get("total"), int):
            total += tokens["total"]
    return total


class GeminiAgent:
    """Runs one-shot prompts through the ``gemini`` CLI in ``stream-json`` mode."""

    def __init__(self, model: Optional[str] = None, working_dir: Optional[str] = None, gemini_cmd: Optional[str] = None):
        self.model_name = model or config.MODEL_NAME
        self.working_dir = working_dir or os.getcwd()
        self.gemini_cmd = gemini_cmd or shutil.which(config.GEMINI_CMD) or config.GEMINI_CMD
        self.timeout = config.GENERATION_TIMEOUT

    def _filter_errors(self, err: str) -> str:
        err = re.sub(r".*?\[DEP0151\] DeprecationWarning:.*?(\n|$)", "", err)
        return "\n".join([s for s in err.splitlines() if s.strip()]).strip()

    def _build_args(self, model: Optional[str]) -> List[str]:
        args = [self.gemini_cmd, "--output-format", "stream-json", "--allowed-tools", "none"]
        if model:
            args.extend(["--model", model])
        return args

    async def _create_subprocess(self, args, **kwargs):
        return await asyncio.create_subprocess_exec(*args, **kwargs)

    async def stream_events(self, user_id: str, prompt: str, model: Optional[str] = None) -> AsyncGenerator[Dict, None]:
        """Yield the CLI's JSON events, switching to the fallback model once on capacity errors."""
        current_model = model or self.model_name
        attempt = 0
        max_attempts = 2

        while attempt < max_attempts:
            attempt += 1
            args = self._build_args(current_model)
            logger.debug("[%s] Attempt %d: running %s", user_id, attempt, " ".join(args))

            proc = await self._create_subprocess(
                args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.working_dir
            )
            stderr_buffer: List[str] = []
            stderr_task = None
            should_fallback = False

            async def capture_stderr(pipe):
                while True:
                    line = await pipe.readline()
                    if not line: break
                    stderr_buffer.append(line.decode(errors='replace').strip())

            try:
                proc.stdin.write(prompt.encode('utf-8'))
                await proc.stdin.drain()
                proc.stdin.close()

                stderr_task = asyncio.create_task(capture_stderr(proc.stderr))

                while True:
                    line = await proc.stdout.readline()
                    if not line:
                        break
                    line_str = line.decode(errors='replace').strip()
                    if not line_str: continue
                    try:
                        data = json.loads(line_str)
                    except json.JSONDecodeError:
                        yield {"type": "raw", "content": line_str}
                        continue

                    if data.get("type") == "error" and is_capacity_error(str(data)) and attempt < max_attempts:
                        fallback = FALLBACK_MODELS.get(current_model)
                        if fallback:
                            logger.warning("[%s] Capacity error on %s, falling back to %s", user_id, current_model, fallback)
                            current_model = fallback
                            should_fallback = True
                            break
                    yield data

                if should_fallback:
                    continue

                await proc.wait()
                await stderr_task

                if proc.returncode != 0:
                    err_text = self._filter_errors("\n".join(stderr_buffer))
                    if is_capacity_error(err_text) and attempt < max_attempts:
                        fallback = FALLBACK_MODELS.get(current_model)
                        if fallback:
                            logger.warning("[%s] Capacity error on %s, falling back to %s", user_id, current_model, fallback)
                            current_model = fallback
                            continue
                    raise GenerationError(f"Generation backend exited with code {proc.returncode}: {err_text or 'no output'}")
                break
            finally:
                if proc.returncode is None:
                    try:
                        proc.terminate()
                        await proc.wait()
                    except ProcessLookupError:
                        pass
                if stderr_task is not None and not stderr_task.done():
                    stderr_task.cancel()
                    try:
                        await stderr_task
                    except asyncio.CancelledError:
                        pass

    async def complete(self, user_id: str, prompt: str, model: Optional[str] = None) -> Completion:
        """Run ``prompt`` to completion and return the assistant text and token usage."""
        text = ""
        tokens = 0
        used_model = model or self.model_name

        async def collect():
            nonlocal text, tokens, used_model
            events = self.stream_events(user_id, prompt, model)
            try:
                async for event in events:
                    kind = event.get("type")
                    if kind == "init" and event.get("model"):
                        used_model = event["model"]
                    elif kind == "message" and event.get("role", "assistant") == "assistant":
                        text += event.get("content", "")
                    elif kind == "raw":
                        text += event.get("content", "") + "\n"
                    elif kind == "result":
                        tokens = extract_token_count(event.get("stats") or {})
                    elif kind == "error":
                        raise GenerationError(f"Generation backend error: {event.get('message') or event.get('content')}")
            finally:
                await events.aclose()

        try:
            await asyncio.wait_for(collect(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise GenerationError(f"Generation timed out after {self.timeout:.0f}s") from e
        except OSError as e:
            raise GenerationError(f"Failed to start generation backend: {e}") from e

        logger.info("[%s] Completion finished (%d tokens, model=%s)", user_id, tokens, used_model)
        return Completion(text=text.strip(), tokens=tokens, model=used_model)
