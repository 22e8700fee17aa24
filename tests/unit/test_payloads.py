"""
Unit tests for payload models, payload parsing and fingerprints.
"""

from datetime import datetime

import pytest

from jobqueue.constants import JOB_TYPE_MEDIA_PROCESS
from jobqueue.errors import PayloadValidationError
from jobqueue.producer import compute_fingerprint, parse_payload
from jobqueue.types.payloads import (
    MediaProcessPayload,
    NotificationFanoutPayload,
    RenditionKind,
    validate_payload,
)


def media_payload(**overrides) -> dict:
    payload = {
        "asset_key": "assets/42",
        "source_path": "/uploads/42.mov",
        "renditions": [
            {"name": "720p", "width": 1280},
            {"name": "thumb", "kind": "thumbnail", "width": 320},
        ],
    }
    payload.update(overrides)
    return payload


class TestMediaProcessPayload:
    """Tests for the media.process payload model."""

    def test_valid_payload(self):
        payload = MediaProcessPayload.model_validate(media_payload())

        assert payload.asset_key == "assets/42"
        assert payload.renditions[1].kind == RenditionKind.THUMBNAIL
        assert payload.renditions[0].filename == "720p.mp4"
        assert payload.renditions[1].filename == "thumb.jpg"

    def test_duplicate_rendition_names_rejected(self):
        renditions = [{"name": "720p", "width": 1280}, {"name": "720p", "width": 640}]
        with pytest.raises(PayloadValidationError):
            validate_payload(MediaProcessPayload, media_payload(renditions=renditions))

    def test_min_viable_cannot_exceed_renditions(self):
        with pytest.raises(PayloadValidationError):
            validate_payload(MediaProcessPayload, media_payload(min_viable_renditions=3))

    def test_unknown_fields_rejected(self):
        with pytest.raises(PayloadValidationError) as exc_info:
            validate_payload(MediaProcessPayload, media_payload(priority="high"))

        assert exc_info.value.errors
        assert exc_info.value.errors[0]["loc"] == ["priority"]

    def test_fingerprint_fields_ignore_rendition_order(self):
        first = MediaProcessPayload.model_validate(media_payload())
        second = MediaProcessPayload.model_validate(
            media_payload(renditions=list(reversed(media_payload()["renditions"])))
        )

        assert first.fingerprint_fields() == second.fingerprint_fields()


class TestNotificationFanoutPayload:
    def test_requires_recipients(self):
        with pytest.raises(PayloadValidationError):
            validate_payload(
                NotificationFanoutPayload,
                {"event_id": "e1", "template": "like", "recipient_ids": []},
            )

    def test_fingerprint_uses_event_and_template(self):
        payload = NotificationFanoutPayload(
            event_id="e1", template="like", recipient_ids=["u1"], context={"n": 1}
        )

        assert payload.fingerprint_fields() == {"event_id": "e1", "template": "like"}


class TestFingerprint:
    """Tests for compute_fingerprint."""

    def test_deterministic_across_key_order(self):
        first = compute_fingerprint(JOB_TYPE_MEDIA_PROCESS, {"a": 1, "b": [1, 2]})
        second = compute_fingerprint(JOB_TYPE_MEDIA_PROCESS, {"b": [1, 2], "a": 1})

        assert first == second
        assert len(first) == 64

    def test_type_is_part_of_the_fingerprint(self):
        fields = {"asset_key": "a"}

        assert compute_fingerprint("media.process", fields) != compute_fingerprint(
            "notifications.fanout", fields
        )

    def test_different_fields_differ(self):
        assert compute_fingerprint("t", {"id": 1}) != compute_fingerprint("t", {"id": 2})


class TestParsePayload:
    """Tests for payload normalization at enqueue time."""

    def test_mapping_passes_through(self):
        assert parse_payload({"a": 1}) == {"a": 1}

    def test_json_text_and_bytes(self):
        assert parse_payload('{"a": 1}') == {"a": 1}
        assert parse_payload(b'{"a": [1, 2]}') == {"a": [1, 2]}

    @pytest.mark.parametrize("raw", ["[1, 2]", "42", b'"text"', "null"])
    def test_non_object_rejected(self, raw):
        with pytest.raises(PayloadValidationError):
            parse_payload(raw)

    def test_invalid_json_rejected(self):
        with pytest.raises(PayloadValidationError):
            parse_payload("{not json")

    def test_unserializable_values_rejected(self):
        with pytest.raises(PayloadValidationError):
            parse_payload({"when": datetime(2026, 1, 1)})
