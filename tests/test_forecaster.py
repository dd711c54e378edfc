"""
test_forecaster.py — Calendar-baseline intensity projection.
"""

from datetime import timedelta

import pytest

from factories import BASE_TIME, make_event
from moodmap.core.errors import InvalidInput
from moodmap.services.forecaster import DEFAULT_CONFIDENCE, FALLBACK_INTENSITY, Forecaster


@pytest.fixture()
def forecaster():
    return Forecaster()


@pytest.fixture()
def nine_am():
    """Two Monday 09:00 events, intensities 0.6 and 0.8."""
    return [
        make_event("a", category="joy", intensity=0.6, timestamp=BASE_TIME),
        make_event("b", category="joy", intensity=0.8, timestamp=BASE_TIME + timedelta(minutes=30)),
    ]


class TestBaselines:

    def test_hour_nine_baseline(self, forecaster, nine_am):
        by_hour, by_weekday = forecaster.baselines(nine_am)
        assert by_hour == {9: pytest.approx(0.7)}
        assert by_weekday == {0: pytest.approx(0.7)}

    def test_legacy_intensity_is_normalised_before_averaging(self, forecaster):
        events = [make_event("a", intensity=4, timestamp=BASE_TIME)]
        by_hour, _ = forecaster.baselines(events)
        assert by_hour[9] == pytest.approx(0.8)


class TestForecast:

    def test_horizon_length_and_hourly_steps(self, forecaster, nine_am):
        now = BASE_TIME - timedelta(hours=1)
        forecasts = forecaster.forecast(nine_am, 24, now=now)
        assert len(forecasts) == 24
        assert forecasts[0].target_time == now + timedelta(hours=1)
        assert forecasts[-1].target_time == now + timedelta(hours=24)

    def test_known_slot_uses_baselines(self, forecaster, nine_am):
        # Monday 08:00 → the first target is Monday 09:00, covered by both tables.
        forecasts = forecaster.forecast(nine_am, 2, now=BASE_TIME - timedelta(hours=1))
        assert forecasts[0].predicted_intensity == 0.7

    def test_missing_slot_falls_back(self, forecaster, nine_am):
        forecasts = forecaster.forecast(nine_am, 2, now=BASE_TIME - timedelta(hours=1))
        assert forecasts[1].predicted_intensity == FALLBACK_INTENSITY == 0.6

    def test_no_history(self, forecaster):
        forecasts = forecaster.forecast([], 3, now=BASE_TIME)
        assert [f.predicted_intensity for f in forecasts] == [0.6, 0.6, 0.6]
        assert all(f.predicted_category is None for f in forecasts)

    def test_category_is_overall_mode(self, forecaster, nine_am):
        events = nine_am + [make_event("c", category="fear", timestamp=BASE_TIME)]
        forecasts = forecaster.forecast(events, 5, now=BASE_TIME)
        assert {f.predicted_category.value for f in forecasts} == {"joy"}

    def test_confidence_default_and_override(self, forecaster, nine_am):
        assert forecaster.forecast(nine_am, 1, now=BASE_TIME)[0].confidence == DEFAULT_CONFIDENCE
        assert forecaster.forecast(nine_am, 1, 0.3, now=BASE_TIME)[0].confidence == 0.3

    def test_zero_horizon(self, forecaster, nine_am):
        assert forecaster.forecast(nine_am, 0, now=BASE_TIME) == []

    @pytest.mark.parametrize("horizon,confidence", [(-1, None), (10_000, None), (24, 1.5)])
    def test_rejects_out_of_range(self, forecaster, nine_am, horizon, confidence):
        with pytest.raises(InvalidInput):
            forecaster.forecast(nine_am, horizon, confidence, now=BASE_TIME)
