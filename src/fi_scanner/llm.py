"""
Shared LLM helpers.

This module centralizes the OpenAI-compatible chat completion calls so every
classifier stage reuses the same retry behaviour and response validation.
Responses are parsed into plain Python values at this boundary; anything that
does not match the expected shape raises `MalformedResponseError`, which the
retry policy treats like a transient failure.
"""

from __future__ import annotations

import json

import openai

from .errors import MalformedResponseError
from .utils import RetryPolicy, retry, retry_on

RETRYABLE_OPENAI_EXCEPTIONS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)

is_retryable_llm_error = retry_on(*RETRYABLE_OPENAI_EXCEPTIONS, MalformedResponseError)


def function_tool(name: str, properties: dict, required: list[str]) -> dict:
    """Build a single-function tool schema."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


def _extract_json(text: str) -> dict:
    """Parse JSON from raw model output, trimming surrounding text if needed."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise
        return json.loads(text[start : end + 1])


def parse_function_arguments(raw: str | None, function_name: str) -> dict:
    """Decode function-call arguments into a dict."""
    if not raw or not raw.strip():
        raise MalformedResponseError(f"{function_name}: empty arguments")
    try:
        data = _extract_json(raw.strip())
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"{function_name}: arguments are not JSON ({e})") from e
    if not isinstance(data, dict):
        raise MalformedResponseError(f"{function_name}: arguments are not a JSON object")
    return data


def require_bool(data: dict, key: str, function_name: str) -> bool:
    """Read a required boolean field, accepting "true"/"false" strings."""
    if key not in data:
        raise MalformedResponseError(f"{function_name}: missing field {key!r}")
    value = data[key]
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise MalformedResponseError(
        f"{function_name}: field {key!r} is not a boolean ({value!r})"
    )


class OpenAIChatMixin:
    """
    Mixin providing retried OpenAI-compatible chat completion calls.

    The mixin expects ``self.retry_policy`` (a `RetryPolicy`) for the retry
    decorator and ``self.settings`` to expose ``REQUEST_TIMEOUT``.
    """

    retry_policy: RetryPolicy

    @retry()
    def _create_completion(self, **kwargs):
        """Call the OpenAI-compatible chat completion API with retries."""
        return openai.chat.completions.create(**kwargs)

    @retry()
    def _ask_boolean(
        self,
        *,
        model: str,
        messages: list[dict],
        tool: dict,
        field: str,
    ) -> bool:
        """
        Force a single function call and return one boolean field of its
        arguments.

        Transport failures and malformed arguments are both retried.
        """
        name = tool["function"]["name"]
        response = openai.chat.completions.create(
            model=model,
            messages=messages,
            temperature=0,
            tools=[tool],
            tool_choice={"type": "function", "function": {"name": name}},
            timeout=self.settings.REQUEST_TIMEOUT,
        )
        message = response.choices[0].message
        tool_calls = getattr(message, "tool_calls", None) or []
        if not tool_calls:
            raise MalformedResponseError(f"{name}: response contained no function call")
        data = parse_function_arguments(tool_calls[0].function.arguments, name)
        return require_bool(data, field, name)
