"""
Classification Cascade
======================

Decides whether one document is a formal request for further information
concerning a target report category. Stages run cheapest first and the first
rejection is terminal:

0. Structural screen (no external cost): response-style file names, overly
   long documents, and consultant-report structure.
1. Cheap screen: YES/NO over a head and tail sample. Classifier errors here
   fail open.
2. Request detection: is the document an authority-to-applicant request?
3. Category match: the response deny-list, then the classifier's category
   answer, then a verbatim quote found by deterministic text matching.
4. Evidence gate: the quote must hold a request verb and a category term
   close together. Nothing is accepted without passing it.

Outcomes are memoized in a `ResultCache`; a hit returns the stored result
tagged ``_cached`` without running any stage.
"""

from __future__ import annotations

from collections import Counter

import structlog

from . import evidence
from .cache import ResultCache
from .classifier import Classifier
from .config import Settings
from .errors import ClassifierUnavailableError
from .models import Accepted, ClassificationResult, Rejected

log = structlog.get_logger(__name__)

STAGE_STRUCTURE = "structure-reject"
STAGE_CHEAP = "cheap-ai-reject"
STAGE_NOT_REQUEST = "not-fi-request"
STAGE_DENY_LIST = "response-deny-list"
STAGE_CATEGORY = "category-mismatch"
STAGE_EVIDENCE = "evidence-invalid"
STAGE_ACCEPTED = "fi-detection"

STAGE_CONFIDENCE = {
    STAGE_STRUCTURE: 0.9,
    STAGE_CHEAP: 0.7,
    STAGE_NOT_REQUEST: 0.85,
    STAGE_DENY_LIST: 0.9,
    STAGE_CATEGORY: 0.8,
    STAGE_EVIDENCE: 0.8,
    STAGE_ACCEPTED: 0.95,
}

DETECTION_METHODS = {
    STAGE_STRUCTURE: "structural_reject",
    STAGE_CHEAP: "cheap_filter_reject",
    STAGE_NOT_REQUEST: "ai_not_fi_request",
    STAGE_DENY_LIST: "deny_list_reject",
    STAGE_CATEGORY: "ai_wrong_report_type",
    STAGE_EVIDENCE: "evidence_validation_failed",
    STAGE_ACCEPTED: "ai_full_processing",
}


def _reject(stage: str, reason: str) -> Rejected:
    return Rejected(
        stage=stage,
        reason=reason,
        detection_method=DETECTION_METHODS[stage],
        confidence=STAGE_CONFIDENCE[stage],
    )


class ClassificationCascade:
    """Five-stage, cheapest-first request classifier with a result cache."""

    def __init__(self, classifier: Classifier, cache: ResultCache, settings: Settings):
        self.classifier = classifier
        self.cache = cache
        self.settings = settings
        self.stage_counts: Counter = Counter()

    def screen_file_name(self, file_name: str) -> Rejected | None:
        """The file-name part of the structural stage, usable before download."""
        indicator = evidence.response_filename_indicator(file_name)
        if indicator:
            return _reject(
                STAGE_STRUCTURE, f"file name indicates a response document ({indicator!r})"
            )
        return None

    def structural_screen(
        self,
        file_name: str,
        text: str,
        page_count: int | None = None,
        full_length: int | None = None,
    ) -> Rejected | None:
        """Stage 0. Pure function of its inputs."""
        rejected = self.screen_file_name(file_name)
        if rejected:
            return rejected

        if page_count is None:
            page_count = evidence.estimate_pages(
                full_length if full_length is not None else len(text),
                self.settings.CHARS_PER_PAGE,
            )
        if page_count > self.settings.MAX_ESTIMATED_PAGES:
            return _reject(
                STAGE_STRUCTURE,
                f"document is {page_count} pages (limit {self.settings.MAX_ESTIMATED_PAGES})",
            )

        marker = evidence.report_structure_marker(text)
        if marker:
            return _reject(STAGE_STRUCTURE, f"formal report structure ({marker!r})")
        return None

    def classify(
        self,
        file_name: str,
        text: str,
        category: str,
        *,
        page_count: int | None = None,
        full_length: int | None = None,
    ) -> ClassificationResult:
        """
        Run the cascade for one document and target category.

        Rejections are returned, never raised. `ClassifierUnavailableError`
        from stages 2 and 3 propagates to the caller and nothing is cached.
        """
        key = self.cache.key_for(file_name, category, text)
        cached = self.cache.get(key)
        if cached is not None:
            result = cached.cached()
            self.stage_counts[result.detection_method] += 1
            log.debug(
                "Classification served from cache",
                file_name=file_name,
                category=category,
                stage=result.stage,
            )
            return result

        result = self._run_stages(file_name, text, category, page_count, full_length)
        self.cache.put(key, result)
        self.stage_counts[result.detection_method] += 1

        if result.match:
            log.info(
                "Request matched",
                file_name=file_name,
                category=category,
                quote=result.quote,
            )
        else:
            log.debug(
                "Document rejected",
                file_name=file_name,
                category=category,
                stage=result.stage,
                reason=result.reason,
            )
        return result

    def _run_stages(
        self,
        file_name: str,
        text: str,
        category: str,
        page_count: int | None,
        full_length: int | None,
    ) -> ClassificationResult:
        rejected = self.structural_screen(file_name, text, page_count, full_length)
        if rejected:
            return rejected

        try:
            if not self.classifier.quick_screen(text):
                return _reject(STAGE_CHEAP, "cheap screen answered NO")
        except ClassifierUnavailableError as e:
            log.warning(
                "Cheap screen unavailable; passing document on",
                file_name=file_name,
                error=str(e),
            )

        if not self.classifier.detect_request(text):
            return _reject(STAGE_NOT_REQUEST, "classifier found no formal request")

        deny = evidence.find_response_language(text)
        if deny:
            return _reject(STAGE_DENY_LIST, f"response/decision language ({deny!r})")

        if not self.classifier.matches_category(text, category):
            return _reject(STAGE_CATEGORY, f"request does not concern {category!r}")

        window = self.settings.EVIDENCE_WINDOW_CHARS
        quote = evidence.extract_evidence_quote(text, category, window)
        check = evidence.validate_evidence(quote, category, window)
        if not check.valid:
            return _reject(STAGE_EVIDENCE, check.reason)

        return Accepted(
            quote=quote,
            confidence=STAGE_CONFIDENCE[STAGE_ACCEPTED],
            stage=STAGE_ACCEPTED,
            detection_method=DETECTION_METHODS[STAGE_ACCEPTED],
        )
