"""Tests for wire models, change events and timestamp helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from cira.clock import format_timestamp, next_timestamp, parse_timestamp
from cira.errors import DecodeFailure
from cira.models.events import ChangeEvent, ChangeType
from cira.models.remote import PostRecord, decode_feed_post, decode_record

T0 = datetime(2026, 1, 19, 10, 0, tzinfo=timezone.utc)


def test_parse_timestamp_accepts_z_and_naive():
    assert parse_timestamp("2026-01-19T10:00:00Z") == T0
    assert parse_timestamp("2026-01-19T10:00:00") == T0
    assert parse_timestamp("2026-01-19T11:00:00+01:00") == T0


def test_format_timestamp_sorts_lexicographically():
    earlier = format_timestamp(T0)
    later = format_timestamp(T0 + timedelta(microseconds=1))
    assert earlier == "2026-01-19T10:00:00.000000+00:00"
    assert earlier < later


def test_next_timestamp_is_strictly_increasing():
    assert next_timestamp(T0, now=T0 - timedelta(hours=1)) == T0 + timedelta(microseconds=1)
    assert next_timestamp(T0, now=T0 + timedelta(hours=1)) == T0 + timedelta(hours=1)
    assert next_timestamp(None, now=T0) == T0


def test_post_record_lowercases_ids_and_falls_back_to_created_at():
    record = decode_record(
        "captures",
        {"id": "ABC", "owner_id": "U1", "image_path": "x.jpg", "created_at": "2026-01-19T10:00:00Z"},
    )
    assert record.id == "abc"
    assert record.owner_id == "u1"
    assert record.effective_updated_at == T0
    assert record.is_complete


def test_post_record_to_wire_uses_canonical_timestamps():
    record = PostRecord(id="a", owner_id="u", created_at=T0, updated_at=T0)
    wire = record.to_wire()
    assert wire["created_at"] == "2026-01-19T10:00:00.000000+00:00"
    assert not record.is_complete


@pytest.mark.parametrize(
    "raw",
    [
        "not a dict",
        {"id": "a", "owner_id": "u"},
        {"id": "a", "owner_id": "u", "created_at": "yesterday"},
    ],
)
def test_decode_record_rejects_malformed(raw):
    with pytest.raises(DecodeFailure):
        decode_record("captures", raw)


def test_decode_chapter_requires_name():
    with pytest.raises(DecodeFailure):
        decode_record("collections", {"id": "c", "owner_id": "u", "created_at": "2026-01-19T10:00:00Z"})


def test_feed_post_nested_author():
    post = decode_feed_post(
        {
            "id": "p",
            "owner_id": "o",
            "message": "hello",
            "created_at": "2026-01-19T10:00:00Z",
            "profiles": {"username": "mia", "avatar_data": None},
        }
    )
    assert post.author.username == "mia"


def test_feed_post_nested_author_as_list():
    post = decode_feed_post(
        {"id": "p", "owner_id": "o", "created_at": "2026-01-19T10:00:00Z", "profiles": [{"username": "mia"}]}
    )
    assert post.author.username == "mia"


def test_feed_post_flat_author():
    post = decode_feed_post(
        {"id": "p", "owner_id": "o", "created_at": "2026-01-19T10:00:00Z", "author_username": "sam", "author_avatar_data": "b64"}
    )
    assert post.author.username == "sam"
    assert post.author.avatar_data == "b64"


def test_feed_post_rejects_garbage():
    with pytest.raises(DecodeFailure):
        decode_feed_post({"id": "p"})


def test_change_event_current_shape():
    event = ChangeEvent.from_payload(
        {"data": {"table": "posts", "type": "delete", "old_record": {"id": "ABC"}}}
    )
    assert event.type is ChangeType.DELETE
    assert event.deleted_id == "abc"


def test_change_event_insert_without_record_fails():
    with pytest.raises(DecodeFailure):
        ChangeEvent.from_payload({"data": {"table": "posts", "type": "INSERT"}})


def test_change_event_unknown_type_fails():
    with pytest.raises(DecodeFailure):
        ChangeEvent.from_payload({"data": {"table": "posts", "type": "TRUNCATE", "record": {"id": "a"}}})
