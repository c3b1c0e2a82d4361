"""Tests for subject validation and identifier selection."""

import pytest

from shield.errors import InvalidSubject
from shield.models import Subjects
from shield.subjects import (
    identifier_for, lifecycle_subjects, network_contains, normalize_subject,
    validate_subjects,
)


class TestNormalize:
    def test_ipv4_and_ipv6(self):
        assert normalize_subject(" 203.0.113.5 ") == "203.0.113.5"
        assert normalize_subject("2001:DB8::0001") == "2001:db8::1"

    def test_api_key(self):
        assert normalize_subject("api_key:abc_DEF-123") == "api_key:abc_DEF-123"
        with pytest.raises(InvalidSubject):
            normalize_subject("api_key:a b")

    def test_networks_only_when_allowed(self):
        assert normalize_subject("10.1.2.3/8", allow_network=True) == "10.0.0.0/8"
        with pytest.raises(InvalidSubject):
            normalize_subject("10.0.0.0/8")

    @pytest.mark.parametrize("value", ["", "   ", "256.0.0.1", "example.com", None])
    def test_rejects(self, value):
        with pytest.raises(InvalidSubject):
            normalize_subject(value, allow_network=True)

    def test_error_masks_api_key(self):
        with pytest.raises(InvalidSubject) as info:
            normalize_subject("api_key:secret token")
        assert "secret token" not in str(info.value)

    def test_network_contains(self):
        assert network_contains("10.0.0.0/8", "10.200.1.1")
        assert not network_contains("10.0.0.0/8", "2001:db8::1")


class TestIdentifiers:
    def test_precedence(self):
        full = Subjects(ip="203.0.113.5", api_key="abcdefgh", endpoint="/v1/x")
        assert identifier_for(full) == ("api_key", "api_key:abcdefgh")
        assert identifier_for(Subjects(ip="203.0.113.5", endpoint="/v1/x")) == (
            "endpoint", "203.0.113.5:/v1/x")
        assert identifier_for(Subjects(ip="203.0.113.5")) == ("ip", "203.0.113.5")

    def test_lifecycle_subjects_key_first(self):
        subjects = Subjects(ip="203.0.113.5", api_key="abcdefgh")
        assert lifecycle_subjects(subjects) == ["api_key:abcdefgh", "203.0.113.5"]

    def test_validate_subjects(self):
        assert validate_subjects(Subjects(ip=" 203.0.113.5")).ip == "203.0.113.5"
        with pytest.raises(InvalidSubject):
            validate_subjects(Subjects(ip="203.0.113.5", endpoint="no-slash"))
