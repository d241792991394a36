"""Tests for models/core.py value types."""
from brandfoundation.models.core import Confidence, confidence_rank


class TestConfidence:

    def test_ordered_by_rank(self):
        assert Confidence.LOW < Confidence.MEDIUM < Confidence.HIGH
        assert Confidence.HIGH > Confidence.LOW
        assert not Confidence.LOW > Confidence.HIGH
        assert Confidence.MEDIUM >= Confidence.MEDIUM

    def test_max_and_sorted(self):
        assert max(Confidence) is Confidence.HIGH
        assert min(Confidence) is Confidence.LOW
        assert sorted([Confidence.HIGH, Confidence.LOW, Confidence.MEDIUM]) == [Confidence.LOW, Confidence.MEDIUM, Confidence.HIGH]

    def test_still_equal_to_its_wire_value(self):
        assert Confidence.HIGH == 'high'
        assert Confidence('medium') is Confidence.MEDIUM

    def test_parse(self):
        assert Confidence.parse(' HIGH ') is Confidence.HIGH
        assert Confidence.parse('certain') is None
        assert Confidence.parse(3) is None

    def test_missing_stamp_ranks_below_low(self):
        assert confidence_rank(None) < confidence_rank(Confidence.LOW)
