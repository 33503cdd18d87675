"""Language-model script generation for lesson videos."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import os
from typing import Any, Callable, Mapping, Protocol
from urllib.parse import quote

import requests

from domain.lesson_content import ContentRequest
from domain.lesson_script import LessonPipelineError

LOGGER = logging.getLogger("lesson_video.provider")

PROVIDER_CODE = "lesson_video.provider.failed"
PROVIDER_CONFIG_CODE = "lesson_video.provider.not_configured"

GEMINI_API_KEY_ENV = "GEMINI_API_KEY"
GROQ_API_KEY_ENV = "GROQ_API_KEY"
GEMINI_MODEL = "gemini-1.5-pro"
GROQ_MODEL = "llama3-70b-8192"
GEMINI_ENDPOINT = (
    "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
)
GROQ_ENDPOINT = "https://api.groq.com/openai/v1/chat/completions"
DEFAULT_TIMEOUT_SECONDS = 120.0
GROQ_TEMPERATURE = 0.7
GROQ_MAX_TOKENS = 4096

SYSTEM_PROMPT = (
    "You are an expert educational content creator for children. Create "
    "high-quality, engaging, and age-appropriate content for educational "
    "videos. Your content should be factually correct, engaging, and "
    "formatted according to the requested parameters."
)

RESPONSE_SHAPE = """{
  "scriptContent": {
    "opening": "Opening script",
    "mainContent": [
      {
        "sectionTitle": "Section 1 Title",
        "script": "Detailed script for this section",
        "interactiveElement": "Suggestion for interactive element to engage learners"
      }
    ],
    "conclusion": "Closing script"
  },
  "learningObjectives": ["objective 1", "objective 2", "objective 3"],
  "materials": ["material 1", "material 2"],
  "visualReferences": [
    {"title": "Visual 1", "description": "Detailed description of visual aid"}
  ]
}"""


@dataclass(frozen=True)
class GeneratedContent:
    """Script and supporting material returned by a provider."""

    script_content: Any
    learning_objectives: Any
    materials: Any
    visual_references: Any


class ScriptProvider(Protocol):
    """Anything that turns a content request into generated content."""

    def generate(self, request: ContentRequest) -> GeneratedContent:
        ...


Transport = Callable[[str, bytes, Mapping[str, str], float], bytes]


def build_prompt(request: ContentRequest) -> str:
    """Build the user prompt for one lesson script."""
    lines = [
        f"Create educational video content for children on {request.subject} "
        f'about "{request.title}".',
        "",
        "Details:",
        f"- Subject: {request.subject}",
        f"- Age Group: {request.age_group} years",
        f"- Difficulty Level: {request.difficulty_level}",
        f"- Content Format: {request.content_format}",
        f"- Duration: {request.duration} minutes",
    ]
    if request.specific_instructions:
        lines.append(f"- Specific Instructions: {request.specific_instructions}")
    lines.extend(
        [
            "",
            "Return a JSON object with the following structure:",
            RESPONSE_SHAPE,
            "",
            "The script should be engaging, educational, and appropriate for the "
            "age group. Include interactive elements where appropriate. Do not "
            "include anything outside the JSON response.",
        ]
    )
    return "\n".join(lines)


def strip_code_fence(text_value: str) -> str:
    """Remove a surrounding Markdown code fence if present."""
    if "```json" in text_value:
        return text_value.split("```json", 1)[1].split("```", 1)[0].strip()
    if "```" in text_value:
        return text_value.split("```", 1)[1].split("```", 1)[0].strip()
    return text_value.strip()


def parse_generated_content(text_value: str) -> GeneratedContent:
    """Parse a provider response body into GeneratedContent."""
    try:
        payload = json.loads(strip_code_fence(text_value))
    except json.JSONDecodeError as exc:
        raise LessonPipelineError(
            PROVIDER_CODE, f"failed to parse AI response: {exc.msg}"
        ) from exc
    if not isinstance(payload, dict):
        # keep whatever came back; the normalizer copes with any shape
        return GeneratedContent(payload, None, None, None)
    return GeneratedContent(
        script_content=payload.get("scriptContent"),
        learning_objectives=payload.get("learningObjectives"),
        materials=payload.get("materials"),
        visual_references=payload.get("visualReferences"),
    )


def requests_transport(
    url: str, body: bytes, headers: Mapping[str, str], timeout: float
) -> bytes:
    """POST a JSON body and return the raw response."""
    try:
        response = requests.post(url, data=body, headers=dict(headers), timeout=timeout)
    except requests.RequestException as exc:
        raise LessonPipelineError(
            PROVIDER_CODE, f"provider request failed: {exc}"
        ) from exc
    if response.status_code != 200:
        detail = response.text.strip()
        raise LessonPipelineError(
            PROVIDER_CODE, f"provider returned HTTP {response.status_code}: {detail}"
        )
    return response.content


def decode_json_response(raw: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise LessonPipelineError(
            PROVIDER_CODE, "provider response is not valid JSON"
        ) from exc
    if not isinstance(payload, dict):
        raise LessonPipelineError(PROVIDER_CODE, "provider response is not an object")
    return payload


@dataclass(frozen=True)
class GeminiProvider:
    """Google Gemini generateContent client."""

    api_key: str
    model: str = GEMINI_MODEL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    transport: Transport = requests_transport

    def generate(self, request: ContentRequest) -> GeneratedContent:
        url = GEMINI_ENDPOINT.format(model=quote(self.model, safe=""))
        body = {
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": build_prompt(request)}]}],
        }
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }
        LOGGER.info("lesson_video.provider.request: gemini model=%s", self.model)
        payload = decode_json_response(
            self.transport(url, json.dumps(body).encode("utf-8"), headers, self.timeout_seconds)
        )
        try:
            parts = payload["candidates"][0]["content"]["parts"]
            text_value = "".join(str(part.get("text", "")) for part in parts)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise LessonPipelineError(
                PROVIDER_CODE, "gemini response has no candidate text"
            ) from exc
        return parse_generated_content(text_value)


@dataclass(frozen=True)
class GroqProvider:
    """Groq chat-completions client (OpenAI-compatible)."""

    api_key: str
    model: str = GROQ_MODEL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    transport: Transport = requests_transport

    def generate(self, request: ContentRequest) -> GeneratedContent:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(request)},
            ],
            "temperature": GROQ_TEMPERATURE,
            "max_tokens": GROQ_MAX_TOKENS,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        LOGGER.info("lesson_video.provider.request: groq model=%s", self.model)
        payload = decode_json_response(
            self.transport(
                GROQ_ENDPOINT, json.dumps(body).encode("utf-8"), headers, self.timeout_seconds
            )
        )
        try:
            text_value = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LessonPipelineError(
                PROVIDER_CODE, "groq response has no message content"
            ) from exc
        return parse_generated_content(str(text_value))


def select_provider(
    ai_model: str,
    env: Mapping[str, str] | None = None,
    transport: Transport = requests_transport,
) -> ScriptProvider:
    """Pick the provider for an aiModel value; anything but gemini uses Groq."""
    values = os.environ if env is None else env
    if ai_model.strip().lower() == "gemini":
        api_key = values.get(GEMINI_API_KEY_ENV, "").strip()
        if not api_key:
            raise LessonPipelineError(
                PROVIDER_CONFIG_CODE, f"{GEMINI_API_KEY_ENV} is not set"
            )
        return GeminiProvider(api_key=api_key, transport=transport)
    api_key = values.get(GROQ_API_KEY_ENV, "").strip()
    if not api_key:
        raise LessonPipelineError(PROVIDER_CONFIG_CODE, f"{GROQ_API_KEY_ENV} is not set")
    return GroqProvider(api_key=api_key, transport=transport)
