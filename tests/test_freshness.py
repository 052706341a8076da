"""Tests for the freshness evaluator and timestamp helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from freshness import (TIME_SKEW_TOLERANCE, FreshnessVerdict, LocalImageMetadata,
                       Rationale, RemoteImageMetadata, days_since, evaluate,
                       parse_timestamp)

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
CREATED = datetime(2024, 5, 20, 8, 0, 0, tzinfo=timezone.utc)


def _local(digest=None, created_at=CREATED):
    return LocalImageMetadata(digest=digest, created_at=created_at)


def _remote(digest=None, last_updated_at=CREATED, digest_available=None):
    if digest_available is None:
        digest_available = digest is not None
    return RemoteImageMetadata(digest=digest, last_updated_at=last_updated_at,
                               digest_available=digest_available)


class TestDigestComparison:

    def test_matching_digests_mean_no_update(self):
        verdict = evaluate(_local('repo@sha256:AA'), _remote('repo@sha256:AA'), NOW)
        assert verdict.has_update is False
        assert verdict.rationale is Rationale.DIGEST_MATCH

    def test_different_digests_mean_update(self):
        verdict = evaluate(_local('repo@sha256:AA'), _remote('repo@sha256:BB'), NOW)
        assert verdict.has_update is True
        assert verdict.rationale is Rationale.DIGEST_MISMATCH

    def test_repository_prefix_is_part_of_the_comparison(self):
        verdict = evaluate(_local('nginx@sha256:AA'), _remote('library/nginx@sha256:AA'), NOW)
        assert verdict.rationale is Rationale.DIGEST_MISMATCH

    def test_digest_wins_over_timestamps(self):
        # Remote is far newer, but the digests agree
        remote = _remote('repo@sha256:AA', last_updated_at=CREATED + timedelta(days=5))
        verdict = evaluate(_local('repo@sha256:AA'), remote, NOW)
        assert verdict.has_update is False


class TestRemoteDigestUnavailable:

    @pytest.mark.parametrize('offset', [timedelta(0), timedelta(hours=2), timedelta(days=30)])
    def test_no_update_regardless_of_timestamps(self, offset):
        remote = _remote(None, last_updated_at=CREATED + offset)
        verdict = evaluate(_local('repo@sha256:AA'), remote, NOW)
        assert verdict.has_update is False
        assert verdict.rationale is Rationale.LOCAL_DIGEST_REMOTE_UNKNOWN


class TestTimeFallback:
    """Without a local digest only the timestamps can be compared."""

    def test_within_tolerance_is_not_an_update(self):
        remote = _remote(None, last_updated_at=CREATED + timedelta(minutes=30))
        verdict = evaluate(_local(None), remote, NOW)
        assert verdict.has_update is False
        assert verdict.rationale is Rationale.TIME_WITHIN_THRESHOLD

    def test_beyond_tolerance_is_an_update(self):
        remote = _remote(None, last_updated_at=CREATED + timedelta(hours=2))
        verdict = evaluate(_local(None), remote, NOW)
        assert verdict.has_update is True
        assert verdict.rationale is Rationale.TIME_THRESHOLD_EXCEEDED

    def test_exactly_at_tolerance_is_not_an_update(self):
        remote = _remote(None, last_updated_at=CREATED + TIME_SKEW_TOLERANCE)
        assert evaluate(_local(None), remote, NOW).has_update is False

    def test_used_even_when_remote_digest_is_available(self):
        remote = _remote('repo@sha256:BB', last_updated_at=CREATED + timedelta(hours=3))
        verdict = evaluate(_local(None), remote, NOW)
        assert verdict.rationale is Rationale.TIME_THRESHOLD_EXCEEDED

    def test_missing_remote_timestamp_is_not_an_update(self):
        verdict = evaluate(_local(None), _remote(None, last_updated_at=None), NOW)
        assert verdict.has_update is False
        assert verdict.days_since_remote_update == 0

    def test_missing_local_timestamp_is_not_an_update(self):
        verdict = evaluate(_local(None, created_at=None), _remote(None), NOW)
        assert verdict.has_update is False


class TestDaysSinceRemoteUpdate:

    def test_whole_days_are_counted(self):
        remote = _remote('repo@sha256:AA', last_updated_at=NOW - timedelta(days=3, hours=5))
        assert evaluate(_local('repo@sha256:AA'), remote, NOW).days_since_remote_update == 3

    def test_future_timestamp_clamps_to_zero(self):
        remote = _remote('repo@sha256:AA', last_updated_at=NOW + timedelta(days=2))
        assert evaluate(_local('repo@sha256:AA'), remote, NOW).days_since_remote_update == 0

    def test_days_since_none(self):
        assert days_since(None, NOW) == 0


class TestPurity:

    def test_same_inputs_give_same_verdict(self):
        local = _local(None)
        remote = _remote(None, last_updated_at=CREATED + timedelta(hours=2))
        assert evaluate(local, remote, NOW) == evaluate(local, remote, NOW)

    def test_verdict_value(self):
        verdict = evaluate(_local('repo@sha256:AA'), _remote('repo@sha256:BB',
                                                              last_updated_at=NOW), NOW)
        assert verdict == FreshnessVerdict(True, Rationale.DIGEST_MISMATCH, 0)


class TestParseTimestamp:

    def test_docker_nanoseconds_are_truncated(self):
        parsed = parse_timestamp('2024-05-01T10:00:00.123456789Z')
        assert parsed == datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)

    def test_registry_microseconds(self):
        parsed = parse_timestamp('2024-05-01T10:00:00.654321Z')
        assert parsed == datetime(2024, 5, 1, 10, 0, 0, 654321, tzinfo=timezone.utc)

    def test_no_fraction(self):
        assert parse_timestamp('2024-05-01T10:00:00Z') == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)

    def test_offset_is_converted_to_utc(self):
        parsed = parse_timestamp('2024-05-01T10:00:00.5+02:00')
        assert parsed == datetime(2024, 5, 1, 8, 0, 0, 500000, tzinfo=timezone.utc)

    @pytest.mark.parametrize('value', [None, '', 'not a date', 42])
    def test_invalid_values(self, value):
        assert parse_timestamp(value) is None
