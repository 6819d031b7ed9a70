# intent.py
# Routes a task before any tool is touched.
#
# EXPLANATION / GENERAL / REJECT are answered directly; CODE_EDIT, DEBUG and
# CODE_REVIEW enter the phased loop. The model is asked first; any failure
# falls back to a keyword heuristic.

from openai import OpenAIError
from pydantic import ValidationError

from codeloop import prompts
from codeloop.collaborators import Tracer, emit, json_schema_format
from codeloop.models import Intent, IntentResult
from codeloop.parsing import extract_json

EXPLANATION_STARTS = ("what", "who", "when", "where", "why", "how", "explain", "describe", "summarize")
ACTION_WORDS = (
    "add", "create", "update", "implement", "refactor", "fix", "write", "generate",
    "run", "install", "build", "change", "edit", "remove", "delete",
)
DEBUG_WORDS = ("error", "exception", "failing", "failed", "stacktrace", "stack trace", "bug")
REVIEW_WORDS = ("review", "critique", "audit", "assess")


class IntentClassifier:
    def __init__(self, model=None, tracer: Tracer | None = None) -> None:
        self._model = model
        self._tracer = tracer

    def classify(self, task: str) -> IntentResult:
        if self._model is None:
            return self.heuristic(task)
        try:
            raw = self._model.query(
                "developer",
                f"{prompts.INTENT_SYSTEM}\n\nTask:\n{task}",
                response_format=json_schema_format("intent", IntentResult.model_json_schema()),
            )
            return IntentResult.model_validate(extract_json(raw))
        except (ValueError, ValidationError, OpenAIError) as exc:
            emit(self._tracer, "intent_classification_failed", message=str(exc))
            return self.heuristic(task)

    @staticmethod
    def heuristic(task: str) -> IntentResult:
        text = (task or "").strip().lower()
        if not text:
            return IntentResult(intent=Intent.REJECT, confidence=0.9)
        if any(word in text for word in DEBUG_WORDS):
            return IntentResult(intent=Intent.DEBUG, confidence=0.7)
        if any(word in text for word in REVIEW_WORDS):
            return IntentResult(intent=Intent.CODE_REVIEW, confidence=0.7)
        if any(text.startswith(word) or f" {word} " in text for word in ACTION_WORDS):
            return IntentResult(intent=Intent.CODE_EDIT, confidence=0.75)
        if text.endswith("?") or any(text.startswith(f"{word} ") for word in EXPLANATION_STARTS):
            return IntentResult(intent=Intent.EXPLANATION, confidence=0.7)
        return IntentResult(intent=Intent.GENERAL, confidence=0.55)
