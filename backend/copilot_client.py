"""Trivia AI functions driven through the Copilot CLI in non-interactive mode."""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
import traceback
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

import config
from logger import CopilotCallTracker, get_copilot_logger, get_logger
from models import NextAction, TriviaQuestion

logger = get_logger("PromptQuiz.ai")
copilot_log = get_copilot_logger()

# Copilot SDK ships a bundled CLI binary; it is optional
COPILOT_SDK_AVAILABLE = False
COPILOT_MODULE_INFO = ""
try:
    import copilot
    COPILOT_SDK_AVAILABLE = True
    COPILOT_MODULE_INFO = f"version={getattr(copilot, '__version__', 'unknown')}, path={copilot.__file__}"
except ImportError as e:
    COPILOT_MODULE_INFO = f"Import failed: {e}"

VALID_MODELS = [
    "claude-sonnet-4.5", "claude-haiku-4.5", "claude-sonnet-4",
    "gpt-5.1", "gpt-5", "gpt-5-mini", "gpt-4.1",
]

DECIDE_SYSTEM_PROMPT = """You are a trivia question generator agent. Decide whether you can confidently write a trivia question for the prompt, or whether you need to search the web for current information first.

Choose "generate" if you have sufficient knowledge or previous searches already gave you enough.
Choose "search" only when the topic needs current or recent information (recent events, latest releases, current office holders, statistics).
If you have already searched and have relevant results, choose "generate".

OUTPUT FORMAT - Return ONLY valid JSON (no markdown, no explanation):
{"action": "search" | "generate", "reasoning": "why", "searchQuery": "query if searching"}"""

QUESTION_SYSTEM_PROMPT = """You are a trivia question generator. Given a player's prompt, create one multiple-choice trivia question with exactly 1 correct answer and 3 plausible but incorrect distractors.

RULES:
1. Be factually accurate, using the most current information available
2. Distractors must be plausible but clearly wrong
3. Keep the question and answers concise

OUTPUT FORMAT - Return ONLY valid JSON (no markdown, no explanation):
{"question": "The question text?", "correct": "Right answer", "distractors": ["Wrong 1", "Wrong 2", "Wrong 3"]}"""

DETAIL_SYSTEM_PROMPT = """You are a trivia detail writer. Given a trivia question and its correct answer, write one accurate, engaging fun fact about the topic in 1-2 sentences of plain language.

OUTPUT FORMAT - Return ONLY valid JSON: {"detail": "..."}"""


def extract_json_payload(content: str) -> dict:
    """Extract a JSON object from a model response."""
    json_match = re.search(r'```(?:json)?\s*([\s\S]*?)```', content)
    if json_match:
        content = json_match.group(1).strip()

    json_match = re.search(r'\{[\s\S]*\}', content)
    if not json_match:
        raise ValueError("No JSON object found in response")

    return json.loads(json_match.group(0))


def find_copilot_cli() -> Optional[str]:
    """Find the Copilot CLI executable"""
    if config.COPILOT_CLI_PATH and os.path.exists(config.COPILOT_CLI_PATH):
        return config.COPILOT_CLI_PATH

    if COPILOT_SDK_AVAILABLE:
        sdk_cli_path = Path(copilot.__file__).parent / "bin" / "copilot"
        if sdk_cli_path.exists() and os.access(sdk_cli_path, os.X_OK):
            return str(sdk_cli_path)

    return shutil.which("copilot")


async def generate_with_copilot(prompt: str, system_message: str, caller: str) -> str:
    """Run one prompt through the Copilot CLI and return its stdout."""
    model = config.QUIZ_COPILOT_MODEL
    if model not in VALID_MODELS:
        copilot_log.warning("Unrecognized model: %s, using default gpt-4.1", model)
        model = "gpt-4.1"

    full_prompt = f"""{system_message}

USER REQUEST:
{prompt}"""

    tracker = CopilotCallTracker(endpoint=caller, model=model, prompt_chars=len(full_prompt))
    tracker.start()
    copilot_log.debug("User prompt (%d chars):\n%s", len(prompt), prompt)

    cli_path = find_copilot_cli()
    if not cli_path:
        tracker.finish(success=False, error="Copilot CLI not found")
        raise RuntimeError(
            "Copilot CLI not found. Install github-copilot-sdk or set COPILOT_CLI_PATH."
        )

    try:
        process = await asyncio.create_subprocess_exec(
            cli_path, "-p", full_prompt, "-s", "--model", model,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await asyncio.wait_for(
            process.communicate(),
            timeout=config.COPILOT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        tracker.finish(success=False, error=f"Timeout after {config.COPILOT_TIMEOUT_SECONDS}s")
        raise RuntimeError(f"Copilot CLI timed out after {config.COPILOT_TIMEOUT_SECONDS} seconds")
    except OSError as e:
        tracker.finish(success=False, error=f"{type(e).__name__}: {e}")
        copilot_log.error("Full traceback:\n%s", traceback.format_exc())
        raise RuntimeError(f"Could not run Copilot CLI: {e}") from e

    stdout_text = stdout.decode('utf-8', errors='replace').strip()
    stderr_text = stderr.decode('utf-8', errors='replace').strip()
    if stderr_text:
        copilot_log.debug("stderr output:\n%s", stderr_text)

    if process.returncode != 0:
        err_msg = f"Copilot CLI exit code {process.returncode}: {stderr_text[:200]}"
        tracker.finish(
            success=False,
            error=err_msg,
            exit_code=process.returncode,
            stderr_text=stderr_text,
            stdout_text=stdout_text,
            response_chars=len(stdout_text),
        )
        raise RuntimeError(err_msg)

    copilot_log.debug("Response (%d chars):\n%s", len(stdout_text), stdout_text[:2000])
    tracker.finish(
        success=True,
        exit_code=process.returncode,
        stderr_text=stderr_text,
        stdout_text=stdout_text,
        response_chars=len(stdout_text),
    )
    return stdout_text


async def decide_next_action(
    step_count: int,
    max_steps: int,
    search_history: list[dict],
    prompt_text: str,
) -> NextAction:
    prompt = (
        f"Step {step_count}/{max_steps}\n"
        f"Previous search results: {json.dumps(search_history, indent=2)}\n\n"
        f'Trivia prompt: "{prompt_text}"\n'
        f"Decide the next action."
    )
    content = await generate_with_copilot(prompt, DECIDE_SYSTEM_PROMPT, caller="decide_next_action")
    try:
        return NextAction.model_validate(extract_json_payload(content))
    except (ValueError, PydanticValidationError) as e:
        # An unreadable decision is treated as "just generate"
        logger.warning(f"⚠️  Could not parse agent decision, generating directly: {e}")
        return NextAction(action='generate', reasoning="unparseable decision")


async def generate_trivia_question(prompt_text: str, search_context: str = "") -> TriviaQuestion:
    prompt = f'Create a trivia question based on this prompt: "{prompt_text}"{search_context}'
    content = await generate_with_copilot(prompt, QUESTION_SYSTEM_PROMPT, caller="generate_trivia_question")
    try:
        return TriviaQuestion.model_validate(extract_json_payload(content))
    except (ValueError, PydanticValidationError) as e:
        logger.error(f"❌ Trivia question parse error: {e}")
        logger.error(f"   Content preview: {content[:200]}...")
        raise ValueError(f"Failed to parse trivia question JSON: {e}") from e


async def generate_trivia_detail(question: str, correct_answer: str) -> str:
    prompt = f"Question: {question}\nCorrect Answer: {correct_answer}"
    content = await generate_with_copilot(prompt, DETAIL_SYSTEM_PROMPT, caller="generate_trivia_detail")
    detail = extract_json_payload(content).get("detail")
    if not isinstance(detail, str) or not detail.strip():
        raise ValueError("Detail missing from response")
    return detail.strip()
