"""AI-assisted explanation of failed test runs."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional, Protocol

import google.generativeai as genai

logger = logging.getLogger(__name__)

INSUFFICIENT_LOGS = "AI Analysis skipped: Insufficient logs."
MISSING_API_KEY = "AI Analysis disabled: Missing API Key."
TECHNICAL_ERROR = "Failed to generate AI analysis due to a technical error."

_ANALYZER_INSTRUCTION = (
    "You are an expert QA automation investigator. Analyze the provided CI logs "
    "and test runner errors. Identify the root cause and propose a technical fix."
)
_CRITIC_INSTRUCTION = (
    "You are an expert QA technical evaluator. You receive raw logs and a proposed "
    "root cause with a fix. Check that the proposal is grounded in the logs and "
    "replace it with the correct analysis when it is not. Do not mention drafts or "
    "a review process. Do not repeat the raw logs. Keep the answer concise and "
    "addressed to the developer."
)
_ANALYZER_SCHEMA = {
    "type": "object",
    "properties": {
        "rootCause": {"type": "string"},
        "suggestedFix": {"type": "string"},
    },
    "required": ["rootCause", "suggestedFix"],
}
_FALLBACK_PROPOSAL = {
    "rootCause": "The analyzer could not produce a structured answer from the logs.",
    "suggestedFix": "Review the raw logs manually.",
}


class FailureAnalyzer(Protocol):
    """External collaborator that explains a failed run."""

    def analyze(self, logs: str, *, image: str) -> str:
        ...


ModelFactory = Callable[..., Any]


class GeminiFailureAnalyzer:
    """Two-step Gemini analysis: a JSON analyzer pass, then a Markdown critic pass."""

    def __init__(
        self,
        *,
        api_key: Optional[str],
        model_name: str = "gemini-2.5-flash",
        max_log_chars: int = 60000,
        model_factory: Optional[ModelFactory] = None,
    ) -> None:
        self._api_key = api_key
        self._model_name = model_name
        self._max_log_chars = max_log_chars
        self._model_factory = model_factory or genai.GenerativeModel
        if api_key and model_factory is None:
            genai.configure(api_key=api_key)

    def analyze(self, logs: str, *, image: str) -> str:
        if not self._api_key:
            logger.warning("Gemini API key is not configured; skipping analysis")
            return MISSING_API_KEY

        truncated = logs[-self._max_log_chars :]
        try:
            proposal = self._propose(truncated, image=image)
            return self._critique(truncated, proposal)
        except Exception as exc:
            logger.error("AI analysis failed: %s", exc, extra={"image": image})
            return TECHNICAL_ERROR

    def _propose(self, logs: str, *, image: str) -> dict[str, str]:
        model = self._model_factory(
            model_name=self._model_name,
            generation_config={
                "temperature": 0.4,
                "response_mime_type": "application/json",
                "response_schema": _ANALYZER_SCHEMA,
            },
            system_instruction=_ANALYZER_INSTRUCTION,
        )
        prompt = (
            f'A test execution failed inside a container running the image "{image}".\n\n'
            "Analyze these logs and return your findings as JSON:\n"
            f"{logs}\n"
        )
        text = model.generate_content(prompt).text
        try:
            parsed = json.loads(text)
        except (TypeError, ValueError):
            logger.warning("Analyzer returned non-JSON output; using fallback proposal")
            return dict(_FALLBACK_PROPOSAL)
        if not isinstance(parsed, dict):
            return dict(_FALLBACK_PROPOSAL)
        return {
            "rootCause": str(parsed.get("rootCause") or _FALLBACK_PROPOSAL["rootCause"]),
            "suggestedFix": str(
                parsed.get("suggestedFix") or _FALLBACK_PROPOSAL["suggestedFix"]
            ),
        }

    def _critique(self, logs: str, proposal: dict[str, str]) -> str:
        model = self._model_factory(
            model_name=self._model_name,
            generation_config={"temperature": 0.0},
            system_instruction=_CRITIC_INSTRUCTION,
        )
        prompt = (
            f"RAW LOGS:\n{logs}\n\n"
            "PROPOSED ANALYSIS:\n"
            f"- Proposed Root Cause: {proposal['rootCause']}\n"
            f"- Proposed Fix: {proposal['suggestedFix']}\n\n"
            "Evaluate the proposal strictly against the raw logs and override it if "
            "it is wrong or unhelpful. Answer using exactly this Markdown layout and "
            "nothing else:\n\n"
            "### 🚨 Root Cause\n"
            "[Two sentences explaining what failed]\n\n"
            "### 🛠️ Suggested Fix\n"
            "1. [Actionable step]\n"
            "2. [Actionable step]\n"
        )
        text = model.generate_content(prompt).text
        if not text or not text.strip():
            raise ValueError("critic returned an empty response")
        return text.strip()


__all__ = [
    "FailureAnalyzer",
    "GeminiFailureAnalyzer",
    "INSUFFICIENT_LOGS",
    "MISSING_API_KEY",
    "TECHNICAL_ERROR",
]
