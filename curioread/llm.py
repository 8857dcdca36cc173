# llm.py  - Gemini via google-generativeai directly (no LangChain wrapper)
import json
import logging
import os
from typing import List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import BlockedPromptException, StopCandidateException
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from curioread.errors import LLMError, LLMTerminalError

logger = logging.getLogger(__name__)

# Known-good text models, tried in this order after GEMINI_MODEL
CANDIDATE_MODELS = [
    "gemini-2.0-flash",
    "gemini-1.5-flash",
    "gemini-1.5-pro",
]

TRANSIENT_ERRORS = (
    google_exceptions.ResourceExhausted,
    google_exceptions.TooManyRequests,
    google_exceptions.ServiceUnavailable,
    google_exceptions.InternalServerError,
    google_exceptions.DeadlineExceeded,
)
BLOCKING_FINISH_REASONS = {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}

PROMPT_DIR = os.path.join(os.path.dirname(__file__), "prompts")


def load_prompt(name: str) -> str:
    with open(os.path.join(PROMPT_DIR, name), "r", encoding="utf-8") as f:
        return f.read()


def strip_fences(content: str) -> str:
    # Some models wrap JSON in ``` blocks; strip if present
    content = content.strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else ""
        if content.rstrip().endswith("```"):
            content = content.rstrip()[:-3]
    return content.strip()


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, LLMError) and not isinstance(exc, LLMTerminalError)


def _finish_reason(resp) -> str:
    try:
        reason = resp.candidates[0].finish_reason
    except (AttributeError, IndexError):
        return ""
    return getattr(reason, "name", str(reason))


class GeminiClient:
    """Gemini wrapper returning parsed JSON, with model fallback and retries.

    Blocked prompts and safety stops raise LLMTerminalError; quota, outage and
    malformed-output problems raise LLMError and are retried in-call up to
    ``max_attempts`` times before surfacing to the pipeline.
    """

    def __init__(self, api_key: str, model: str = "", max_attempts: int = 2, wait_max: float = 10):
        self.api_key = api_key
        self.model = model
        self.max_attempts = max_attempts
        self.wait_max = wait_max
        self._configured = False
        self.last_model_used: Optional[str] = None

    def _configure(self) -> None:
        if self._configured:
            return
        if not self.api_key:
            raise LLMError("GOOGLE_API_KEY is missing")
        genai.configure(api_key=self.api_key)
        self._configured = True

    def models_to_try(self) -> List[str]:
        models = [self.model] if self.model else []
        return models + [m for m in CANDIDATE_MODELS if m != self.model]

    def _try_model_once(self, model_name: str, prompt_text: str, generation_config: dict) -> dict:
        model = genai.GenerativeModel(model_name, generation_config=generation_config or None)
        try:
            resp = model.generate_content(prompt_text)
        except (BlockedPromptException, StopCandidateException) as e:
            raise LLMTerminalError(f"Model {model_name} refused the prompt: {e}") from e
        except TRANSIENT_ERRORS as e:
            raise LLMError(f"Model {model_name} unavailable: {e}") from e

        feedback = getattr(resp, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            raise LLMTerminalError(f"Model {model_name} blocked the prompt: {feedback.block_reason}")

        try:
            content = resp.text or ""
        except ValueError as e:
            # .text raises when the candidate has no parts (stopped early)
            if _finish_reason(resp) in BLOCKING_FINISH_REASONS:
                raise LLMTerminalError(f"Model {model_name} stopped: {_finish_reason(resp)}") from e
            raise LLMError(f"Model {model_name} returned no content: {e}") from e
        if not content.strip():
            raise LLMError(f"Model {model_name} returned empty response.")

        content = strip_fences(content)
        try:
            return json.loads(content)
        except ValueError as e:
            raise LLMError(f"Model {model_name} returned non-JSON or bad JSON: {e}\nRaw: {content[:400]}") from e

    def _generate_once(self, prompt_text: str, generation_config: dict) -> dict:
        self._configure()
        errors = []
        for name in self.models_to_try():
            try:
                logger.info("[LLM] Trying model: %s", name)
                result = self._try_model_once(name, prompt_text, generation_config)
                self.last_model_used = name
                return result
            except LLMTerminalError:
                raise
            except LLMError as e:
                errors.append(f"{name}: {e}")
            except google_exceptions.GoogleAPICallError as e:
                # unknown model, bad argument for this model: try the next one
                errors.append(f"{name}: {e}")
        raise LLMError("All candidate models failed:\n" + "\n".join(errors))

    def generate_json(self, prompt_text: str, temperature: Optional[float] = None,
                      max_output_tokens: Optional[int] = None) -> dict:
        generation_config = {}
        if temperature is not None:
            generation_config["temperature"] = temperature
        if max_output_tokens is not None:
            generation_config["max_output_tokens"] = max_output_tokens

        for attempt in Retrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=0, max=self.wait_max),
            reraise=True,
        ):
            with attempt:
                return self._generate_once(prompt_text, generation_config)
