# generators.py
"""LLM-backed analyzer and question generators.

Every payload is validated with the pydantic models in ``schemas`` before it
is returned, so nothing malformed ever reaches the database. A response that
fails validation is retryable (the next sample usually parses).
"""
import json
import logging
from typing import List, Optional, Tuple

from pydantic import ValidationError

from curioread.config import Settings
from curioread.errors import LLMError, LLMTerminalError
from curioread.llm import GeminiClient, load_prompt
from curioread.schemas import ArticleAnalysis, CuriosityResponse, HookResponse
from curioread.utils import normalize_hook_questions, normalize_quiz_cards

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = load_prompt("analysis_prompt.md")
CURIOSITY_PROMPT = load_prompt("curiosity_prompt.md")
HOOK_PROMPT = load_prompt("hook_prompt.md")

# Limit size for LLM cost
MAX_PROMPT_TEXT_CHARS = 60000


def _validate(schema, payload, what: str):
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        raise LLMError(f"{what} response failed validation: {e}") from e


class Analyzer:
    """Profiles article text (archetype, domain, thesis, hooks...)."""

    def __init__(self, client: GeminiClient):
        self.client = client

    @property
    def model_name(self) -> Optional[str]:
        return self.client.last_model_used

    def analyze(self, text: str) -> dict:
        if not text or not text.strip():
            raise LLMTerminalError("No article text to analyze.")
        prompt = f"""{ANALYSIS_PROMPT}

Article text:
{text[:MAX_PROMPT_TEXT_CHARS]}
"""
        payload = self.client.generate_json(prompt)
        analysis = _validate(ArticleAnalysis, payload, "Analysis")
        logger.info(
            "Analysis done: archetype=%s hooks=%d",
            analysis.archetype.label, len(analysis.pedagogy.hooks),
        )
        return analysis.model_dump()


class QuestionGenerator:
    """Strategy interface: ``generate(metadata, text) -> [question, ...]``."""

    name = "base"
    needs_text = False

    def __init__(self, client: GeminiClient):
        self.client = client

    @property
    def model_name(self) -> Optional[str]:
        return self.client.last_model_used

    def generate(self, metadata: dict, text: Optional[str] = None) -> List[dict]:
        raise NotImplementedError


class CuriosityGenerator(QuestionGenerator):
    """One intuition-testing quiz card per pedagogy hook."""

    name = "curiosity"

    def generate(self, metadata: dict, text: Optional[str] = None) -> List[dict]:
        hooks = ((metadata or {}).get("pedagogy") or {}).get("hooks") or []
        if not hooks:
            raise LLMTerminalError("Analysis produced no hooks to build questions from.")
        language = (metadata or {}).get("language") or "en"
        profile = json.dumps({"pedagogy": {"hooks": hooks}}, ensure_ascii=False, indent=2)
        prompt = f"""{CURIOSITY_PROMPT}

Target language: {language}

Pedagogy profile:
{profile}
"""
        payload = self.client.generate_json(prompt, temperature=0.1, max_output_tokens=8192)
        response = _validate(CuriosityResponse, payload, "Curiosity quiz")
        questions = normalize_quiz_cards([card.model_dump() for card in response.quiz_cards])
        if not questions:
            raise LLMError("Curiosity quiz response contained no usable cards.")
        return questions


class HookGenerator(QuestionGenerator):
    """Legacy hook questions written straight from the article text."""

    name = "hook"
    needs_text = True

    def generate(self, metadata: dict, text: Optional[str] = None) -> List[dict]:
        if not text or not text.strip():
            raise LLMTerminalError("Hook questions need the article text.")
        metadata = metadata or {}
        profile = {
            "archetype": metadata.get("archetype"),
            "domain": metadata.get("domain"),
            "core_thesis": metadata.get("core_thesis"),
            "key_concepts": metadata.get("key_concepts") or [],
            "language": metadata.get("language") or "en",
        }
        prompt = f"""{HOOK_PROMPT}

Article profile:
{json.dumps(profile, ensure_ascii=False, indent=2)}

Article text:
{text[:MAX_PROMPT_TEXT_CHARS]}
"""
        payload = self.client.generate_json(prompt, temperature=0.2)
        response = _validate(HookResponse, payload, "Hook")
        questions = normalize_hook_questions([hook.model_dump() for hook in response.hooks])
        if not questions:
            raise LLMError("Hook response contained no usable questions.")
        return questions


GENERATORS = {
    CuriosityGenerator.name: CuriosityGenerator,
    HookGenerator.name: HookGenerator,
}


def build_generator(settings: Settings, client: GeminiClient) -> QuestionGenerator:
    try:
        cls = GENERATORS[settings.question_generator]
    except KeyError:
        raise ValueError(
            f"Unknown QUESTION_GENERATOR {settings.question_generator!r}; "
            f"expected one of {sorted(GENERATORS)}"
        )
    return cls(client)


def build_adapters(settings: Settings) -> Tuple[Analyzer, QuestionGenerator]:
    client = GeminiClient(
        api_key=settings.google_api_key,
        model=settings.gemini_model,
        max_attempts=settings.max_generation_attempts,
    )
    return Analyzer(client), build_generator(settings, client)
