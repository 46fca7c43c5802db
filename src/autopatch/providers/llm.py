"""Language-model backed implementation of :class:`PatchProvider`.

:class:`LLMClient` enforces JSON responses validated against a dataclass
schema with a bounded number of attempts; subclasses supply the transport by
implementing ``_raw_invoke``.  :class:`LLMPatchProvider` renders the patch and
repair prompts and maps client failures onto :class:`ProviderError`.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Optional, Sequence, Type, TypeVar

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

from .base import PatchProposal, PatchRequest, ProviderError, RepairProposal

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

AttemptLogger = Callable[[Dict[str, Any], Optional[str], Optional[Exception], int], None]


class LLMClientError(RuntimeError):
    """Base error raised for structured LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns payload that is not valid JSON."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries due to repeated validation failures."""


@dataclass(slots=True)
class LLMRequest(Generic[T]):
    """Typed request payload sent to an LLM."""

    prompt: str
    response_model: Type[T]
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: float = 0.0
    max_attempts: Optional[int] = None

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload with a strict JSON schema."""
        messages: list[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": self.prompt})

        schema = TypeAdapter(self.response_model).json_schema()
        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": messages,
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": getattr(self.response_model, "__name__", "response"),
                    "schema": schema,
                    "strict": True,
                }
            },
        }
        if self.temperature:
            payload["temperature"] = self.temperature
        if self.metadata:
            payload["metadata"] = {key: str(value)[:512] for key, value in self.metadata.items()}
        return payload


def _strip_code_fence(payload: str) -> str:
    """Remove Markdown-style code fences that wrap JSON payloads."""
    match = re.match(r"^```(?:json)?\s*\n(?P<body>.*?)\n?```\s*$", payload, re.DOTALL | re.IGNORECASE)
    if match:
        return match.group("body").strip()
    return payload


def _extract_json_object(raw: str) -> str | None:
    """Return the first balanced JSON object or array embedded in ``raw``."""
    opening: int | None = None
    expected: list[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(raw):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and opening is not None:
            in_string = True
        elif char in "{[":
            if opening is None:
                opening = index
            expected.append("}" if char == "{" else "]")
        elif expected and char == expected[-1]:
            expected.pop()
            if not expected and opening is not None:
                return re.sub(r",(\s*[}\]])", r"\1", raw[opening : index + 1])
    return None


class LLMClient:
    """High-level helper that enforces JSON responses and schema validation."""

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        return self._model

    def invoke(self, request: LLMRequest[T], *, logger: AttemptLogger | None = None) -> T:
        """Invoke the model and return a validated response object."""
        attempts = request.max_attempts or self._max_attempts
        last_error: Optional[Exception] = None
        adapter = TypeAdapter(request.response_model)

        for attempt in range(1, attempts + 1):
            payload = request.to_payload(self._model)
            raw: Optional[str] = None
            try:
                raw = self._raw_invoke(payload)
                data = self._parse_json(raw)
                validated = adapter.validate_python(data)
            except (LLMResponseFormatError, LLMTransportError, ValidationError) as error:
                last_error = error
                LOGGER.debug("LLM attempt %d/%d failed: %s", attempt, attempts, error)
                if logger:
                    logger(payload, raw, error, attempt)
                if attempt < attempts and self._retry_delay > 0:
                    time.sleep(self._retry_delay)
                continue
            if logger:
                logger(payload, raw, None, attempt)
            return validated

        raise LLMRetryError(
            f"Failed to produce schema-valid JSON after {attempts} attempt(s) for model "
            f"{request.model or self._model}"
        ) from last_error

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _parse_json(raw_response: str) -> Any:
        """Parse JSON payloads and normalise errors."""
        text = (raw_response or "").strip()
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.")
        candidates = [_strip_code_fence(text)]
        embedded = _extract_json_object(text)
        if embedded and embedded not in candidates:
            candidates.append(embedded)
        for candidate in candidates:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                continue
        raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")


SYSTEM_PROMPT = (
    "You are an autonomous software engineer. You change a repository by emitting a single "
    "unified diff in `git diff` format (with `diff --git a/<path> b/<path>` headers and accurate "
    "`@@` hunk ranges). Prefer small, reversible changes. Return only JSON."
)


def _render_tasks(request: PatchRequest) -> str:
    lines = []
    for task in request.tasks:
        paths = ", ".join(task.paths) or "(unspecified)"
        lines.append(f"- [{task.id}] {task.title} (risk {task.risk_score:.2f}; paths: {paths})")
        if task.acceptance:
            lines.append(f"  acceptance: {task.acceptance}")
    return "\n".join(lines) or "- (no tasks)"


def render_patch_prompt(request: PatchRequest) -> str:
    """Render the user prompt for a patch request."""
    guidance = request.guidance
    sections = [
        "## Tasks",
        _render_tasks(request),
        "## Guidance",
        (
            f"Iteration {guidance.iteration}; confidence {guidance.confidence:.2f}; "
            f"address at most {guidance.max_tasks_allowed} task(s)."
        ),
    ]
    if guidance.strategic_hints:
        sections.append("## Strategic Hints")
        sections.extend(f"- {hint}" for hint in guidance.strategic_hints)
    if request.reasoning:
        sections.extend(["## Reasoning So Far", request.reasoning])
    if request.files:
        sections.append("## Repository Files")
        for item in request.files:
            sections.append(f"### {item.path}\n```\n{item.content}\n```")
    sections.append(
        "Respond with JSON: {\"diff\": <unified diff or empty>, \"no_changes\": <true when nothing "
        "needs to change>, \"summary\": <one line>}."
    )
    return "\n\n".join(sections)


def render_repair_prompt(diff: str, reasons: Sequence[str]) -> str:
    """Render the prompt asking the model to fix a diff that failed validation."""
    return "\n\n".join(
        [
            "## Rejected Diff",
            f"```diff\n{diff}\n```",
            "## Validation Failures",
            "\n".join(f"- {reason}" for reason in reasons) or "- unknown",
            (
                "Produce a smaller, safer unified diff that achieves the same intent and passes these "
                "checks. Respond with JSON: {\"diff\": <unified diff>, \"notes\": <one line>}."
            ),
        ]
    )


class LLMPatchProvider:
    """:class:`PatchProvider` that asks an :class:`LLMClient` for diffs."""

    def __init__(self, client: LLMClient, *, repair_temperature: float = 0.2) -> None:
        self._client = client
        self._repair_temperature = repair_temperature

    def generate_patch(self, request: PatchRequest) -> PatchProposal:
        llm_request = LLMRequest(
            prompt=render_patch_prompt(request),
            response_model=PatchProposal,
            system_prompt=SYSTEM_PROMPT,
            metadata={
                "iteration": request.guidance.iteration,
                "tasks": ",".join(task.id for task in request.tasks),
            },
        )
        try:
            return self._client.invoke(llm_request)
        except LLMClientError as error:
            raise ProviderError(f"Patch generation failed: {error}", details={"model": self._client.model}) from error

    def repair_patch(self, diff: str, reasons: Sequence[str]) -> Optional[str]:
        """Return a repaired diff, or ``None`` when the model cannot help."""
        llm_request = LLMRequest(
            prompt=render_repair_prompt(diff, reasons),
            response_model=RepairProposal,
            system_prompt=SYSTEM_PROMPT,
            temperature=self._repair_temperature,
        )
        try:
            proposal = self._client.invoke(llm_request)
        except LLMClientError as error:
            LOGGER.warning("Patch repair failed: %s", error)
            return None
        return proposal.diff or None


__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMPatchProvider",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "render_patch_prompt",
    "render_repair_prompt",
]
