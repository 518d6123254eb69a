"""Chat-completions client and journey parsing for the AI import pipelines."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from flask import current_app
from openai import OpenAI, OpenAIError

from services import prompts
from services.example_service import enhance_extracted_examples, validate_extracted_examples

logger = logging.getLogger(__name__)

TRUNCATED_MESSAGE = (
    'AI response was too long and got truncated. '
    'Try a simpler instruction or fewer nodes.'
)

_JSON_FENCE = re.compile(r'```json\s*([\s\S]*?)\s*```', re.IGNORECASE)
_ANY_FENCE = re.compile(r'```[\w-]*\s*([\s\S]*?)\s*```')


class AIServiceError(Exception):
    """The model call failed before a usable reply came back."""

    status_code = 502


class AIConfigurationError(AIServiceError):
    status_code = 500


class AIResponseError(AIServiceError):
    """The model replied, but the reply is not a usable journey."""


@dataclass
class ModelReply:
    content: str
    usage: dict = field(default_factory=dict)
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class GenerationSettings:
    model_key: str
    temperature: float
    max_tokens: int
    json_mode: bool = False


TRANSCRIPT_JOB = GenerationSettings('OPENAI_TRANSCRIPT_MODEL', 0.5, 16000)
TRANSCRIPT_SYNC = GenerationSettings('OPENAI_TRANSCRIPT_MODEL', 0.3, 4000, json_mode=True)
DIAGRAM = GenerationSettings('OPENAI_DIAGRAM_MODEL', 0.2, 16384)
EDIT_SYNC = GenerationSettings('OPENAI_EDIT_MODEL', 0.2, 8000, json_mode=True)
EDIT_JOB = GenerationSettings('OPENAI_EDIT_MODEL', 0.2, 16000, json_mode=True)
SCREENSHOT = GenerationSettings('OPENAI_DIAGRAM_MODEL', 0.2, 4000, json_mode=True)


def _get_client() -> OpenAI:
    api_key = current_app.config.get('OPENAI_API_KEY')
    if not api_key:
        raise AIConfigurationError('OpenAI API key not configured.')
    return OpenAI(
        api_key=api_key,
        base_url=current_app.config.get('OPENAI_BASE_URL'),
        timeout=current_app.config.get('OPENAI_TIMEOUT', 120),
        max_retries=current_app.config.get('OPENAI_MAX_RETRIES', 2),
    )


def _usage_to_dict(usage) -> dict:
    if usage is None:
        return {}
    return {
        'prompt_tokens': getattr(usage, 'prompt_tokens', 0) or 0,
        'completion_tokens': getattr(usage, 'completion_tokens', 0) or 0,
        'total_tokens': getattr(usage, 'total_tokens', 0) or 0,
    }


def call_model(messages: list, settings: GenerationSettings) -> ModelReply:
    """Run one chat completion and return the first choice."""
    client = _get_client()
    model = current_app.config.get(settings.model_key)
    kwargs = {
        'model': model,
        'messages': messages,
        'temperature': settings.temperature,
        'max_tokens': settings.max_tokens,
    }
    if settings.json_mode:
        kwargs['response_format'] = {'type': 'json_object'}

    try:
        response = client.chat.completions.create(**kwargs)
    except OpenAIError as exc:
        logger.exception('OpenAI request failed: model=%s', model)
        raise AIServiceError(f'OpenAI API error: {exc}') from exc

    if not response.choices:
        raise AIResponseError('No content in response')
    choice = response.choices[0]
    content = choice.message.content or ''
    usage = _usage_to_dict(response.usage)
    logger.info(
        'OpenAI reply: model=%s finish_reason=%s total_tokens=%s',
        model,
        choice.finish_reason,
        usage.get('total_tokens'),
    )
    return ModelReply(content=content, usage=usage, finish_reason=choice.finish_reason)


# ===== RESPONSE PARSING =====

def extract_json(text):
    """Pull the first JSON object out of free-text model output."""
    cleaned = (text or '').strip()
    if not cleaned:
        raise AIResponseError('No content in response')

    candidates = [match.group(1) for match in _JSON_FENCE.finditer(cleaned)]
    candidates.extend(match.group(1) for match in _ANY_FENCE.finditer(cleaned))
    candidates.append(cleaned)
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start != -1 and end > start:
        candidates.append(cleaned[start:end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise AIResponseError(f'Could not find JSON in response: {cleaned[:200]}')


def validate_journey(data):
    """Shallow shape check: a non-empty ``nodes`` list, ``edges`` defaulting to []."""
    if not isinstance(data, dict):
        raise AIResponseError('Invalid journey structure: missing or empty nodes')
    nodes = data.get('nodes')
    if not isinstance(nodes, list) or not nodes:
        raise AIResponseError('Invalid journey structure: missing or empty nodes')
    if not isinstance(data.get('edges'), list):
        data['edges'] = []
    return data


def _parse_journey(reply: ModelReply):
    if reply.finish_reason == 'length':
        raise AIResponseError(TRUNCATED_MESSAGE)
    return validate_journey(extract_json(reply.content))


def _image_message(text, base64_image):
    return {
        'role': 'user',
        'content': [
            {'type': 'text', 'text': text},
            {'type': 'image_url', 'image_url': {'url': base64_image, 'detail': 'auto'}},
        ],
    }


# ===== PIPELINES =====

def transcript_to_journey(transcript, prompt, settings=TRANSCRIPT_JOB):
    if settings.json_mode:
        messages = [
            {'role': 'system', 'content': prompts.TRANSCRIPT_SYSTEM_PROMPT},
            {'role': 'user', 'content': f'{prompt}\n\nTranscript:\n{transcript}'},
        ]
    else:
        messages = [
            {'role': 'system', 'content': prompt},
            {'role': 'user', 'content': transcript},
        ]
    reply = call_model(messages, settings)
    return _parse_journey(reply), reply.usage, reply.finish_reason


def diagram_to_journey(base64_image, prompt, settings=DIAGRAM):
    reply = call_model([_image_message(prompt, base64_image)], settings)
    return _parse_journey(reply), reply.usage, reply.finish_reason


def edit_journey(current_journey, instruction, settings=EDIT_SYNC):
    journey_json = json.dumps(current_journey, separators=(',', ':'), ensure_ascii=False)
    messages = [
        {'role': 'system', 'content': prompts.EDIT_JOURNEY_SYSTEM_PROMPT},
        {
            'role': 'user',
            'content': prompts.build_edit_journey_user_prompt(current_journey, journey_json, instruction),
        },
    ]
    logger.info(
        'Editing journey: nodes=%s selected=%s',
        len(current_journey.get('nodes') or []),
        len(current_journey.get('selectedNodeIds') or []),
    )
    reply = call_model(messages, settings)
    return _parse_journey(reply), reply.usage, reply.finish_reason


def analyze_screenshot(base64_image, prompt=None):
    """Extract example records from a board screenshot.

    Returns ``(valid, invalid, usage)`` after trimming and duplicate filtering.
    """
    reply = call_model([_image_message(prompt or prompts.SCREENSHOT_EXAMPLES_PROMPT, base64_image)], SCREENSHOT)
    if reply.finish_reason == 'length':
        raise AIResponseError(TRUNCATED_MESSAGE)
    data = extract_json(reply.content)
    examples = data.get('examples')
    if not isinstance(examples, list):
        raise AIResponseError('Invalid response structure: missing examples')
    examples = [item for item in examples if isinstance(item, dict)]
    valid, invalid = validate_extracted_examples(enhance_extracted_examples(examples))
    return valid, invalid, reply.usage
