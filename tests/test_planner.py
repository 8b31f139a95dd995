import threading

import pytest

from mp3cd.planner import (
    SUPPORTED_BITRATES,
    CapacityBudget,
    estimated_output_bytes,
    floor_to_supported,
    plan,
    raw_bitrate,
)


CD = 700_000_000


def test_fifty_megabytes_for_ten_minutes_caps_at_max():
    # 50 MB left for 600 s of lossless audio: raw 666 kbps, capped at 320
    assert raw_bitrate(50_000_000, 600) == 666
    resolved = plan(CD, 650_000_000, 600)
    assert resolved.kbps == 320
    assert not resolved.manual
    assert not resolved.over_capacity
    assert resolved.remaining_bytes == 50_000_000


def test_tight_budget_rounds_down_to_supported():
    # 10 MB for 600 s: raw 133 kbps -> 128
    resolved = plan(CD, 690_000_000, 600)
    assert resolved.kbps == 128


def test_exact_fit_uses_that_bitrate():
    duration = 3600
    remaining = estimated_output_bytes(192, duration)
    resolved = plan(CD, CD - remaining, duration)
    assert resolved.kbps == 192


def test_manual_override_wins():
    resolved = plan(CD, 699_000_000, 36000, manual_override_kbps=256)
    assert resolved.kbps == 256
    assert resolved.manual
    assert not resolved.over_capacity
    assert str(resolved) == "256* kbps"


def test_no_lossless_material_means_no_plan():
    assert plan(CD, 100, 0) is None


def test_over_capacity_returns_floor_and_flags_it():
    resolved = plan(CD, 699_900_000, 36000, min_kbps=64)
    assert resolved.kbps == 64
    assert resolved.over_capacity


def test_lossy_larger_than_disc_is_over_capacity():
    resolved = plan(CD, 800_000_000, 60)
    assert resolved.over_capacity
    assert resolved.remaining_bytes == 0


def test_floor_to_supported_respects_window():
    assert floor_to_supported(300, min_kbps=64, max_kbps=256) == 256
    assert floor_to_supported(63, min_kbps=64) is None
    assert floor_to_supported(100) == 96


@pytest.mark.parametrize("measured", [0, 100_000_000, 400_000_000, 650_000_000, 695_000_000])
@pytest.mark.parametrize("duration", [60.0, 600.0, 3600.0, 5 * 3600.0])
def test_resolved_bitrate_fits_or_is_floor(measured, duration):
    resolved = plan(CD, measured, duration)
    remaining = CD - measured
    assert resolved.kbps in SUPPORTED_BITRATES
    if resolved.over_capacity:
        assert resolved.kbps == 64
        assert estimated_output_bytes(64, duration) > remaining
    else:
        assert estimated_output_bytes(resolved.kbps, duration) <= remaining
        # the next step up would not fit, unless already at the maximum
        higher = [b for b in SUPPORTED_BITRATES if resolved.kbps < b <= 320]
        if higher:
            assert estimated_output_bytes(higher[0], duration) > remaining


def test_resolution_is_monotonic_in_measured_lossy():
    last = None
    for measured in range(0, CD, 25_000_000):
        kbps = plan(CD, measured, 3600).kbps
        if last is not None:
            assert kbps <= last
        last = kbps


class TestCapacityBudget:
    def test_resolve_recomputes_from_measurements(self):
        budget = CapacityBudget(CD)
        budget.record_lossy("/a.mp3", 600_000_000)
        assert budget.resolve(3600).kbps == 192

        budget.record_lossy("/b.mp3", 80_000_000)
        assert budget.measured_lossy_bytes() == 680_000_000
        assert budget.remaining_bytes() == 20_000_000
        assert budget.resolve(3600).over_capacity

        budget.forget("/b.mp3")
        assert budget.resolve(3600).kbps == 192

    def test_re_recording_a_file_replaces_its_size(self):
        budget = CapacityBudget(CD)
        budget.record_lossy("/a.mp3", 10)
        budget.record_lossy("/a.mp3", 30)
        assert budget.measured_lossy_bytes() == 30

    def test_manual_override(self):
        budget = CapacityBudget(CD)
        budget.set_manual_override(160)
        assert budget.resolve(100).kbps == 160
        assert budget.resolve(100).manual
        budget.set_manual_override(None)
        assert not budget.resolve(100).manual
        with pytest.raises(ValueError):
            budget.set_manual_override(0)

    def test_concurrent_recording(self):
        budget = CapacityBudget(CD)

        def record(offset):
            for i in range(200):
                budget.record_lossy(f"/{offset}/{i}", 1)

        threads = [threading.Thread(target=record, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert budget.measured_lossy_bytes() == 1600


@pytest.mark.parametrize("measured", [0, 350_000_000, 700_000_000, 900_000_000])
@pytest.mark.parametrize("manual", [32, 128, 320])
def test_manual_override_ignores_measurements(measured, manual):
    resolved = plan(CD, measured, 1234.5, manual_override_kbps=manual)
    assert resolved.kbps == manual
    assert resolved.manual
