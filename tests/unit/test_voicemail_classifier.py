"""
Testes do classificador de atendimento (humano vs. voicemail).
"""

import pytest

from callflow.handlers.voicemail_classifier import (
    AnswerMetadata,
    answer_metadata_from_payload,
    classify_answer,
)

PATTERNS = [r"voice[-_ ]?mail"]


class TestClassifyAnswer:

    def test_no_flags_is_human(self):
        result = classify_answer(AnswerMetadata(), PATTERNS)
        assert result.is_voicemail is False
        assert result.matched_by == "default"
        assert result.kind == "human"

    def test_voicemail_flag(self):
        result = classify_answer(AnswerMetadata(voicemail_detected=True), PATTERNS)
        assert result.is_voicemail is True
        assert result.matched_by == "voicemail_flag"

    def test_machine_flag(self):
        result = classify_answer(AnswerMetadata(machine_answer=True), PATTERNS)
        assert result.is_voicemail is True
        assert result.matched_by == "machine_flag"

    def test_voicemail_flag_has_priority(self):
        result = classify_answer(
            AnswerMetadata(voicemail_detected=True, machine_answer=True, headers={"X-Voice-Mail": "1"}),
            PATTERNS,
        )
        assert result.matched_by == "voicemail_flag"

    @pytest.mark.parametrize("header", ["X-Voice-Mail", "x-voicemail", "VOICE_MAIL", "Voice Mail-Status"])
    def test_header_key_match_is_case_insensitive(self, header):
        result = classify_answer(AnswerMetadata(headers={header: "true"}), PATTERNS)
        assert result.is_voicemail is True
        assert result.matched_by == f"header:{header}"

    def test_unrelated_headers_are_human(self):
        result = classify_answer(AnswerMetadata(headers={"X-Call-Id": "voicemail"}), PATTERNS)
        assert result.is_voicemail is False

    @pytest.mark.parametrize("duration_ms", [0, 500, 2_000, 120_000])
    def test_duration_never_flips_outcome(self, duration_ms):
        human = classify_answer(AnswerMetadata(elapsed_ring_duration_ms=duration_ms), PATTERNS)
        machine = classify_answer(
            AnswerMetadata(machine_answer=True, elapsed_ring_duration_ms=duration_ms),
            PATTERNS,
        )
        assert human.is_voicemail is False
        assert machine.is_voicemail is True

    def test_is_deterministic(self):
        metadata = AnswerMetadata(headers={"X-Voice-Mail": "yes"})
        assert classify_answer(metadata, PATTERNS) == classify_answer(metadata, PATTERNS)

    def test_custom_patterns(self):
        metadata = AnswerMetadata(headers={"X-AMD-Result": "machine"})
        assert classify_answer(metadata, PATTERNS).is_voicemail is False
        assert classify_answer(metadata, [r"amd"]).is_voicemail is True


class TestAnswerMetadataFromPayload:

    def test_empty_payload(self):
        metadata = answer_metadata_from_payload(None, elapsed_ring_duration_ms=300)
        assert metadata == AnswerMetadata(elapsed_ring_duration_ms=300)

    def test_flag_aliases(self):
        assert answer_metadata_from_payload({"voice_mail_detected": True}).voicemail_detected
        assert answer_metadata_from_payload({"voicemail_detected": "true"}).voicemail_detected
        assert answer_metadata_from_payload({"machine_answer": 1}).machine_answer
        assert answer_metadata_from_payload({"answered_by_machine": "yes"}).machine_answer

    def test_false_strings_are_not_flags(self):
        metadata = answer_metadata_from_payload({"voice_mail_detected": "false", "machine_answer": 0})
        assert not metadata.voicemail_detected
        assert not metadata.machine_answer

    def test_nested_call_object(self):
        metadata = answer_metadata_from_payload({"call": {"machine_answer": True}})
        assert metadata.machine_answer

    def test_headers_as_list(self):
        metadata = answer_metadata_from_payload({
            "headers": [{"name": "X-Voice-Mail", "value": "1"}, {"value": "ignored"}]
        })
        assert metadata.headers == {"X-Voice-Mail": "1"}
