"""Tests for the composite pressure score."""

import pytest

from membar.derive import derive_detailed, derive_summary
from membar.models import GIB, MIB, DetailedMemorySnapshot, MemorySnapshot, PressureLevel
from membar.scoring import (
    PressureBucket,
    composite,
    memory_percent,
    memory_percent_from_text,
    pressure_level_score,
    score,
    swap_percent_from_bytes,
    swap_percent_from_text,
)


class TestMemoryPercent:
    def test_used_of_total(self):
        assert memory_percent_from_text("4.5 GB of 16.0 GB") == pytest.approx(28.125)

    def test_lone_number_assumes_16_gb(self):
        assert memory_percent_from_text("8.0 GB") == pytest.approx(50.0)

    def test_clamped_to_100(self):
        assert memory_percent_from_text("20.0 GB of 16.0 GB") == 100.0
        assert memory_percent_from_text("32 GB") == 100.0

    def test_no_numbers(self):
        assert memory_percent_from_text("Unknown") == 0.0

    def test_zero_total(self):
        assert memory_percent_from_text("1.0 GB of 0.0 GB") == 0.0

    def test_numeric(self):
        assert memory_percent(4.0, 16.0) == 25.0
        assert memory_percent(1.0, 0.0) == 0.0
        assert memory_percent(20.0, 16.0) == 100.0


class TestSwapPercent:
    @pytest.mark.parametrize(
        "swap_bytes,expected",
        [
            (0, 0.0),
            (999 * MIB, 25.0),
            (GIB, 50.0),
            (int(3.99 * GIB), 50.0),
            (4 * GIB, 80.0),
            (64 * GIB, 80.0),
        ],
    )
    def test_bucket_boundaries(self, swap_bytes, expected):
        assert swap_percent_from_bytes(swap_bytes) == expected

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("0 MB", 0.0),
            ("0.00 MB", 0.0),
            ("999 MB", 25.0),
            ("512.25 MB", 25.0),
            ("1.0 GB", 50.0),
            ("3.99 GB", 50.0),
            ("4.00 GB", 80.0),
            ("Unknown", 0.0),
        ],
    )
    def test_from_text(self, text, expected):
        assert swap_percent_from_text(text) == expected


class TestPressureLevelScore:
    @pytest.mark.parametrize(
        "level,expected",
        [
            (PressureLevel.NORMAL, 0.0),
            (PressureLevel.WARNING, 65.0),
            (PressureLevel.CRITICAL, 90.0),
            (PressureLevel.UNKNOWN, 0.0),
            ("warning", 65.0),
            ("Error", 0.0),
        ],
    )
    def test_scores(self, level, expected):
        assert pressure_level_score(level) == expected


class TestComposite:
    def test_weighted_example(self):
        assert composite(50, 25, 0) == pytest.approx(27.5)

    def test_maximum_inputs_stay_in_range(self):
        assert composite(100, 80, 90) <= 100

    def test_score_summary_parses_text(self):
        snapshot = MemorySnapshot(PressureLevel.WARNING, "8.0 GB of 16.0 GB", "512 MB")
        result = score(snapshot)

        assert result.memory_usage_percent == pytest.approx(50.0)
        assert result.swap_usage_percent == 25.0
        assert result.overall == pytest.approx(0.4 * 50 + 0.3 * 25 + 0.3 * 65)

    def test_score_detailed_uses_numbers(self):
        snapshot = DetailedMemorySnapshot(
            pressure=PressureLevel.NORMAL,
            # The display string alone would be misread as 4.57 of 3.25
            used_display="4.57 GB (App:3.25 + W:1.00 + C:328 MB)",
            swap_display="3.99 GB",
            total_gb=16.0,
            used_gb=4.0,
            swap_used_bytes=int(3.99 * GIB),
        )
        result = score(snapshot)

        assert result.memory_usage_percent == pytest.approx(25.0)
        assert result.swap_usage_percent == 50.0
        assert result.overall == pytest.approx(0.4 * 25 + 0.3 * 50)

    def test_summary_and_detailed_agree_on_example(self, make_raw):
        raw = make_raw(swap_used=2 * GIB)
        summary = score(derive_summary(raw))
        detailed = score(derive_detailed(raw))

        assert summary.memory_usage_percent == pytest.approx(detailed.memory_usage_percent)
        assert summary.swap_usage_percent == detailed.swap_usage_percent


class TestBuckets:
    @pytest.mark.parametrize(
        "overall,bucket",
        [
            (0.0, PressureBucket.LOW),
            (29.9, PressureBucket.LOW),
            (30.0, PressureBucket.MODERATE),
            (59.9, PressureBucket.MODERATE),
            (60.0, PressureBucket.ELEVATED),
            (75.0, PressureBucket.HIGH),
            (100.0, PressureBucket.HIGH),
        ],
    )
    def test_for_score(self, overall, bucket):
        assert PressureBucket.for_score(overall) is bucket
