from unittest.mock import MagicMock

import pytest

from fi_scanner.cache import ResultCache
from fi_scanner.cascade import ClassificationCascade
from fi_scanner.errors import ClassifierUnavailableError
from fi_scanner.models import Accepted, Rejected

REQUEST_LETTER = (
    "Dear Sir/Madam, with reference to the above planning application, further "
    "information is required. The applicant is requested to submit a noise impact "
    "assessment of the proposed rooftop plant. Yours faithfully, Planning Section."
)

RESPONSE_LETTER = (
    "Dear Planning Officer, further to your letter of 3 March, we have submitted the "
    "following: a noise impact assessment as requested. The applicant is requested "
    "to submit a noise survey, as set out in your letter."
)


def _classifier(quick=True, detect=True, matches=True) -> MagicMock:
    classifier = MagicMock()
    classifier.quick_screen.return_value = quick
    classifier.detect_request.return_value = detect
    classifier.matches_category.return_value = matches
    return classifier


@pytest.fixture
def cache():
    return ResultCache(capacity=10)


def test_request_letter_is_accepted_with_quote(settings, cache):
    classifier = _classifier()
    cascade = ClassificationCascade(classifier, cache, settings)

    result = cascade.classify("request_letter.pdf", REQUEST_LETTER, "acoustic")

    assert isinstance(result, Accepted)
    assert result.match
    assert result.confidence == 0.95
    assert result.detection_method == "ai_full_processing"
    assert "noise" in result.quote
    assert "submit" in result.quote
    classifier.matches_category.assert_called_once_with(REQUEST_LETTER, "acoustic")


def test_response_language_overrides_classifier(settings, cache):
    classifier = _classifier()
    cascade = ClassificationCascade(classifier, cache, settings)

    result = cascade.classify("letter.pdf", RESPONSE_LETTER, "acoustic")

    assert isinstance(result, Rejected)
    assert result.stage == "response-deny-list"
    assert "we have submitted the following" in result.reason
    classifier.matches_category.assert_not_called()


def test_submission_recap_without_request_is_denied(settings, cache):
    classifier = _classifier()
    cascade = ClassificationCascade(classifier, cache, settings)

    result = cascade.classify(
        "letter.pdf", "We have submitted the noise impact assessment as requested.", "acoustic"
    )

    assert result.stage == "response-deny-list"
    assert "we have submitted" in result.reason
    classifier.matches_category.assert_not_called()


def test_request_recapping_an_earlier_submission_is_accepted(settings, cache):
    text = (
        "Dear Sir/Madam, with reference to the above planning application, the "
        "applicant has submitted a preliminary noise survey; however it does not cover "
        "night-time operation of the rooftop plant. The applicant is requested to submit "
        "a revised noise impact assessment. Yours faithfully, Planning Section."
    )
    classifier = _classifier()
    cascade = ClassificationCascade(classifier, cache, settings)

    result = cascade.classify("fi_request.pdf", text, "acoustic")

    assert isinstance(result, Accepted)
    assert result.quote == "The applicant is requested to submit a revised noise impact assessment."
    classifier.matches_category.assert_called_once_with(text, "acoustic")


def test_response_file_name_rejected_without_classifier(settings, cache):
    classifier = _classifier()
    cascade = ClassificationCascade(classifier, cache, settings)

    result = cascade.classify("FI_Received_letter.pdf", REQUEST_LETTER, "acoustic")

    assert result.stage == "structure-reject"
    assert result.confidence == 0.9
    classifier.quick_screen.assert_not_called()


@pytest.mark.parametrize(
    ("page_count", "full_length"),
    [(150, None), (None, 300000)],
)
def test_long_documents_rejected_structurally(settings, cache, page_count, full_length):
    classifier = _classifier()
    cascade = ClassificationCascade(classifier, cache, settings)

    result = cascade.classify(
        "letter.pdf",
        REQUEST_LETTER,
        "acoustic",
        page_count=page_count,
        full_length=full_length,
    )

    assert result.stage == "structure-reject"
    assert "pages" in result.reason
    classifier.quick_screen.assert_not_called()


def test_report_structure_rejected(settings, cache):
    cascade = ClassificationCascade(_classifier(), cache, settings)

    result = cascade.classify(
        "report.pdf", "Executive Summary\n" + REQUEST_LETTER, "acoustic"
    )

    assert result.stage == "structure-reject"
    assert "Executive Summary" in result.reason


def test_structural_screen_is_deterministic(settings, cache):
    cascade = ClassificationCascade(_classifier(), cache, settings)
    text = "Table of Contents\n1.1 Introduction"

    first = cascade.structural_screen("report.pdf", text)
    second = cascade.structural_screen("report.pdf", text)

    assert first == second
    assert cascade.structural_screen("letter.pdf", REQUEST_LETTER) is None


def test_cheap_screen_rejection_is_terminal(settings, cache):
    classifier = _classifier(quick=False)
    cascade = ClassificationCascade(classifier, cache, settings)

    result = cascade.classify("invoice.pdf", REQUEST_LETTER, "acoustic")

    assert result.stage == "cheap-ai-reject"
    assert result.detection_method == "cheap_filter_reject"
    classifier.detect_request.assert_not_called()


def test_cheap_screen_fails_open(settings, cache):
    classifier = _classifier()
    classifier.quick_screen.side_effect = ClassifierUnavailableError("down")
    cascade = ClassificationCascade(classifier, cache, settings)

    result = cascade.classify("request_letter.pdf", REQUEST_LETTER, "acoustic")

    assert result.match
    classifier.detect_request.assert_called_once()


def test_not_a_request(settings, cache):
    classifier = _classifier(detect=False)
    cascade = ClassificationCascade(classifier, cache, settings)

    result = cascade.classify("letter.pdf", REQUEST_LETTER, "acoustic")

    assert result.stage == "not-fi-request"
    assert result.confidence == 0.85
    classifier.matches_category.assert_not_called()


def test_category_mismatch(settings, cache):
    cascade = ClassificationCascade(_classifier(matches=False), cache, settings)

    result = cascade.classify("letter.pdf", REQUEST_LETTER, "ecological")

    assert result.stage == "category-mismatch"
    assert result.detection_method == "ai_wrong_report_type"


def test_no_evidence_means_no_match(settings, cache):
    cascade = ClassificationCascade(_classifier(), cache, settings)
    text = "The proposed plant will generate noise. Refer to the attached drawings."

    result = cascade.classify("letter.pdf", text, "acoustic")

    assert result.stage == "evidence-invalid"
    assert result.detection_method == "evidence_validation_failed"
    assert not result.match


def test_classifier_outage_propagates_and_is_not_cached(settings, cache):
    classifier = _classifier()
    classifier.detect_request.side_effect = ClassifierUnavailableError("down")
    cascade = ClassificationCascade(classifier, cache, settings)

    with pytest.raises(ClassifierUnavailableError):
        cascade.classify("letter.pdf", REQUEST_LETTER, "acoustic")

    assert len(cache) == 0


def test_cache_hit_makes_no_classifier_calls(settings, cache):
    classifier = _classifier()
    cascade = ClassificationCascade(classifier, cache, settings)
    first = cascade.classify("request_letter.pdf", REQUEST_LETTER, "acoustic")
    classifier.reset_mock()

    second = cascade.classify("request_letter.pdf", REQUEST_LETTER, "acoustic")

    assert second.quote == first.quote
    assert second.detection_method == "ai_full_processing_cached"
    assert classifier.method_calls == []
    assert cascade.stage_counts == {
        "ai_full_processing": 1,
        "ai_full_processing_cached": 1,
    }


def test_rejections_are_cached_too(settings, cache):
    classifier = _classifier(detect=False)
    cascade = ClassificationCascade(classifier, cache, settings)
    cascade.classify("letter.pdf", REQUEST_LETTER, "acoustic")

    result = cascade.classify("letter.pdf", REQUEST_LETTER, "acoustic")

    assert result.stage == "not-fi-request"
    assert result.detection_method == "ai_not_fi_request_cached"
    assert classifier.detect_request.call_count == 1
