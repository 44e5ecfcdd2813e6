"""
Semantic Classifier
===================

The external, LLM-backed half of the classification cascade. Three calls are
exposed, cheapest first:

- `SemanticClassifier.quick_screen`: a YES/NO answer over a bounded head and
  tail sample of the document.
- `SemanticClassifier.detect_request`: a forced ``detect_fi_request`` function
  call deciding whether the document is a formal authority-to-applicant
  request for further information.
- `SemanticClassifier.matches_category`: a forced ``match_fi_request`` call
  deciding whether that request concerns the target report category.

Every answer is validated into a boolean at the call boundary. When the retry
budget is spent the call raises `ClassifierUnavailableError`.
"""

from __future__ import annotations

import time
from typing import Callable, Protocol

import openai
import structlog

from .config import Settings
from .errors import ClassifierUnavailableError, MalformedResponseError
from .llm import (
    OpenAIChatMixin,
    function_tool,
    is_retryable_llm_error,
)
from .utils import RetryPolicy

log = structlog.get_logger(__name__)

OMITTED_MIDDLE_MARKER = "\n\n[...document middle omitted...]\n\n"

QUICK_SCREEN_SYSTEM = "You are a document classifier. Answer only YES or NO."

QUICK_SCREEN_PROMPT = """
Does this document REQUEST further information about a planning application?

Answer YES only if:
- A planning authority is REQUESTING information from an applicant/agent
- It uses language like "you are requested to submit", "please provide", "further information is required"

Answer NO if:
- It's responding TO a request ("in response to your request")
- It's a technical report or study
- It's a decision letter (granting/refusing permission)
- It's unrelated to planning (invoice, photo, general correspondence)

Document sample:
{sample}

Answer with just YES or NO.
""".strip()

DETECT_REQUEST_PROMPT = """
You detect if a document is a formal Further Information (FI) request from a
planning authority to an applicant.

Distinguish between:
1. FI REQUESTS: the planning authority ASKING the applicant to provide or submit information (true)
2. FI RESPONSES: the applicant RESPONDING to or SUBMITTING requested information (false)
3. EXISTING DOCUMENTS: reports or submissions that already exist (false)
4. THIRD-PARTY COMMENTS: objectors or consultees suggesting an FI request (false)
5. COVER LETTERS stating further information has been received or is enclosed (false)

Only set isFIRequest=true when the document comes from the planning authority,
uses request language directed at the applicant ("the applicant is requested to
submit", "please provide", "you are requested to carry out"), and is asking for
information rather than responding to an earlier request.

If a document quotes an old request and then answers it, it is a response.
When in doubt, answer false.

Return JSON for detect_fi_request: isFIRequest true/false.
""".strip()

MATCH_CATEGORY_PROMPT = """
You are given a formal Further Information request from a planning authority
and a target report type. Decide whether the request asks for information
specifically related to the target report type.

"An acoustic report was submitted" is FALSE (the report exists).
"The applicant should submit an acoustic report" is TRUE (the report is requested).

All of the following must hold:
1. There is a request verb (submit, provide, prepare, carry out, undertake,
   produce, supply, is required, is requested, should be submitted, must be provided).
2. The planning authority is making the request of the applicant.
3. The target report type is named inside the request.
4. The request verb and the report type are in the same or adjacent sentences.

Reject existing report titles, discussion of existing reports, third-party
suggestions, and general policy statements. When in doubt, answer false.

Return JSON for match_fi_request: requestsReportType true/false.
""".strip()

DETECT_REQUEST_TOOL = function_tool(
    "detect_fi_request",
    {"isFIRequest": {"type": "boolean"}},
    ["isFIRequest"],
)

MATCH_CATEGORY_TOOL = function_tool(
    "match_fi_request",
    {"requestsReportType": {"type": "boolean"}},
    ["requestsReportType"],
)


def head_tail_sample(text: str, head_chars: int, tail_chars: int) -> str:
    """
    Bounded sample for the cheap screen: the whole text when short, otherwise
    the head plus the tail with an omission marker between them.
    """
    if len(text) <= head_chars:
        return text
    if len(text) <= head_chars + tail_chars:
        return text[:head_chars]
    return text[:head_chars] + OMITTED_MIDDLE_MARKER + text[-tail_chars:]


class Classifier(Protocol):
    def quick_screen(self, text: str) -> bool: ...

    def detect_request(self, text: str) -> bool: ...

    def matches_category(self, text: str, category: str) -> bool: ...


class SemanticClassifier(OpenAIChatMixin):
    """
    Classifier backed by an OpenAI-compatible chat completion endpoint.
    """

    def __init__(self, settings: Settings, sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.retry_policy = RetryPolicy.from_settings(
            settings, is_retryable_llm_error, sleep=sleep
        )

    def quick_screen(self, text: str) -> bool:
        """Cheap YES/NO screen over a head and tail sample."""
        sample = head_tail_sample(
            text, self.settings.CHEAP_HEAD_CHARS, self.settings.CHEAP_TAIL_CHARS
        )
        try:
            response = self._create_completion(
                model=self.settings.CLASSIFY_CHEAP_MODEL,
                messages=[
                    {"role": "system", "content": QUICK_SCREEN_SYSTEM},
                    {"role": "user", "content": QUICK_SCREEN_PROMPT.format(sample=sample)},
                ],
                temperature=0,
                max_tokens=10,
                timeout=self.settings.REQUEST_TIMEOUT,
            )
        except (openai.APIError, MalformedResponseError) as e:
            raise ClassifierUnavailableError(f"quick screen failed: {e}") from e
        answer = (response.choices[0].message.content or "").strip().upper()
        passes = "YES" in answer
        log.debug("Quick screen answered", answer=answer, passes=passes)
        return passes

    def detect_request(self, text: str) -> bool:
        """Is this document a formal request for further information?"""
        return self._run_tool(
            DETECT_REQUEST_TOOL,
            "isFIRequest",
            [
                {"role": "system", "content": DETECT_REQUEST_PROMPT},
                {"role": "user", "content": text},
            ],
        )

    def matches_category(self, text: str, category: str) -> bool:
        """Does the request ask for material of the target category?"""
        return self._run_tool(
            MATCH_CATEGORY_TOOL,
            "requestsReportType",
            [
                {"role": "system", "content": MATCH_CATEGORY_PROMPT},
                {"role": "user", "content": f"Target report type: {category}\n\n{text}"},
            ],
        )

    def _run_tool(self, tool: dict, field: str, messages: list[dict]) -> bool:
        name = tool["function"]["name"]
        try:
            return self._ask_boolean(
                model=self.settings.CLASSIFY_MODEL,
                messages=messages,
                tool=tool,
                field=field,
            )
        except (openai.APIError, MalformedResponseError) as e:
            log.error("Classifier call failed", function=name, error=str(e))
            raise ClassifierUnavailableError(f"{name} failed: {e}") from e
