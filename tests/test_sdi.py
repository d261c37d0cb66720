import pytest

from roadsense.errors import MissingWeightError
from roadsense.models import SdiDistressItem, SdiDistressType, Severity
from roadsense.sdi import TYPE_WEIGHTS, SdiIndexCalculator


def item(kind, severity, extent):
    return SdiDistressItem(SdiDistressType(kind), Severity(severity), extent)


@pytest.fixture
def sdi():
    return SdiIndexCalculator()


class TestCalculate:

    def test_single_crack(self, sdi):
        """1 × 3 × 30/100 = 0.9, scaled to 9."""
        score = sdi.calculate([item("crack", "high", 30.0)])
        assert score == 9
        assert sdi.categorize(score) == "Very Good"

    def test_no_distress(self, sdi):
        assert sdi.calculate([]) == 0
        assert sdi.calculate([item("crack", "low", 10.0)], segment_length_m=0) == 0
        assert sdi.calculate([item("crack", "low", 10.0)], segment_length_m=-5) == 0

    def test_extent_ratio_clamped(self, sdi):
        """An extent longer than the segment counts as the whole segment."""
        assert sdi.calculate([item("pothole", "high", 500.0)]) == 90
        assert sdi.calculate([item("pothole", "high", -20.0)]) == 0

    @pytest.mark.parametrize("extent", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_extent(self, sdi, extent):
        with pytest.raises(ValueError):
            sdi.calculate([item("pothole", "high", extent)])

    def test_score_clamped_to_100(self, sdi):
        items = [item("pothole", "high", 100.0), item("rutting", "high", 100.0)]
        assert sdi.calculate(items) == 100

    def test_contributions_add(self, sdi):
        # 3·3·0.04 + 1·2·0.12 = 0.6, then 2·2·0.3 + 2·1·0.08 = 1.36
        assert sdi.calculate([item("pothole", "high", 4), item("raveling", "medium", 12)]) == 6
        assert sdi.calculate([item("rutting", "medium", 30), item("depression", "low", 8)]) == 13

    def test_segment_length_override(self, sdi):
        assert sdi.calculate([item("crack", "high", 30.0)], segment_length_m=50.0) == 18
        assert SdiIndexCalculator(segment_length_m=300.0).calculate(
            [item("crack", "high", 30.0)]) == 3

    def test_every_type_weighted(self, sdi):
        assert set(TYPE_WEIGHTS) == set(SdiDistressType)
        for kind in SdiDistressType:
            for severity in Severity:
                assert 0 <= sdi.calculate([SdiDistressItem(kind, severity, 50.0)]) <= 100

    def test_missing_weight(self):
        calc = SdiIndexCalculator(type_weights={SdiDistressType.CRACK: 1})
        with pytest.raises(MissingWeightError):
            calc.calculate([item("pothole", "low", 1.0)])
        with pytest.raises(LookupError):
            calc.calculate([item("pothole", "low", 1.0)])

    def test_area_based_types(self):
        assert SdiDistressType.POTHOLE.unit == "m²"
        assert SdiDistressType.CRACK.unit == "m"


@pytest.mark.parametrize("score, category", [
    (0, "Very Good"), (20, "Very Good"),
    (21, "Good"), (40, "Good"),
    (41, "Fair"), (60, "Fair"),
    (61, "Lightly Damaged"), (80, "Lightly Damaged"),
    (81, "Severely Damaged"), (100, "Severely Damaged"),
])
def test_bands(score, category):
    assert SdiIndexCalculator.categorize(score) == category


def test_recommendation():
    assert "routine" in SdiIndexCalculator.recommendation(10)
    assert "periodic" in SdiIndexCalculator.recommendation(50)
    assert "reconstruction" in SdiIndexCalculator.recommendation(95)


def test_average_sdi():
    assert SdiIndexCalculator.average_sdi([]) == 0
    assert SdiIndexCalculator.average_sdi([0, 6, 13, 34, 0]) == 10
    assert SdiIndexCalculator.average_sdi([9, 10]) == 9


def test_data_sufficiency():
    assert not SdiIndexCalculator.is_data_sufficient([])
    assert SdiIndexCalculator.is_data_sufficient([item("crack", "low", 1.0)])
