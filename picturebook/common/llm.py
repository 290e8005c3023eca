"""
LiteLLM-powered chat completion helper utilities.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, MutableMapping, Sequence

from litellm import completion

ChatMessage = Mapping[str, Any]

_JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


@dataclass
class ChatResult:
    """
    Structured response returned from an LLM chat completion.
    """

    text: str
    raw: Any


CompletionCallable = Callable[..., ChatResult]


def call_chat_completion(
    *,
    model: str,
    messages: Sequence[ChatMessage],
    temperature: float | None = None,
    max_tokens: int | None = None,
    api_key: str | None = None,
    timeout: float | None = None,
    **extra_kwargs: Any,
) -> ChatResult:
    """
    Invoke LiteLLM's `completion` API once and return the consolidated text.

    No retries happen here; the job runner owns the retry policy.
    """
    payload: MutableMapping[str, Any] = {
        "model": model,
        "messages": list(messages),
        "num_retries": 0,
    }

    if temperature is not None:
        payload["temperature"] = temperature

    if max_tokens is not None:
        payload["max_tokens"] = max_tokens

    if api_key is not None:
        payload["api_key"] = api_key

    if timeout is not None:
        payload["timeout"] = timeout

    payload.update(extra_kwargs)

    response = completion(**payload)

    try:
        message = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise RuntimeError("Unexpected LiteLLM response format.") from exc

    text = str(message or "").strip()
    return ChatResult(text=text, raw=response)


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Parse a JSON object from model output, tolerating prose or code fences around it.
    """
    candidate = text.strip()
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_PATTERN.search(candidate)
        if match is None:
            raise ValueError("Model response did not contain a JSON object.") from None
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise ValueError("Failed to parse model response as JSON.") from exc

    if not isinstance(parsed, dict):
        raise ValueError("Model response JSON must be an object.")
    return parsed
