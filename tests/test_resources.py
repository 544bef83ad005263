"""Resource monitor sampling, trends and suggestions."""

from __future__ import annotations

import asyncio

from catalogcrawl.resources import ResourceMonitor
from tests.conftest import RecordingNotifier, ScriptedSampler

MB = 1024 * 1024


def sampled(readings, **kwargs) -> ResourceMonitor:
    monitor = ResourceMonitor(sampler=ScriptedSampler(readings), **kwargs)

    async def _take():
        for _ in readings:
            await monitor.sample()

    asyncio.run(_take())
    return monitor


def test_trend_spans_five_ticks():
    monitor = sampled([(10.0 * i, 5.0) for i in range(1, 8)])
    m = monitor.current_metrics()
    assert m.cpu == 70.0
    assert m.cpu_trend == 70.0 - 20.0
    assert m.memory_trend == 0.0


def test_trend_with_short_history_uses_oldest_sample():
    monitor = sampled([(10.0, 40.0), (20.0, 30.0), (30.0, 20.0)])
    m = monitor.current_metrics()
    assert m.cpu_trend == 20.0
    assert m.memory_trend == -20.0


def test_trend_is_zero_with_single_sample():
    m = sampled([(50.0, 50.0)]).current_metrics()
    assert (m.cpu_trend, m.memory_trend) == (0.0, 0.0)


def test_no_samples_reads_as_idle():
    m = ResourceMonitor(sampler=ScriptedSampler([(1.0, 1.0)])).current_metrics()
    assert (m.cpu, m.memory) == (0.0, 0.0)


def test_window_length_follows_interval():
    monitor = ResourceMonitor(interval=30.0, window=3600.0, sampler=ScriptedSampler([(1.0, 1.0)]))
    assert monitor._samples.maxlen == 120


def test_suggested_concurrency():
    monitor = ResourceMonitor(per_request_memory_mb=100, hard_cap=15)
    assert monitor.suggested_concurrency(cpu_count=4, available_memory=10 * 100 * MB) == 8
    assert monitor.suggested_concurrency(cpu_count=4, available_memory=3 * 100 * MB) == 3
    assert monitor.suggested_concurrency(cpu_count=32, available_memory=10_000 * MB) == 15
    assert monitor.suggested_concurrency(cpu_count=8, available_memory=MB) == 1


def test_threshold_breach_sends_warning():
    notifier = RecordingNotifier()
    sampled([(95.0, 40.0), (40.0, 40.0), (40.0, 90.0)], notifier=notifier, high_water=80.0)
    assert notifier.levels() == ["warning", "warning"]
    assert "CPU 95.0%" in notifier.messages[0][1]
    assert "memory 90.0%" in notifier.messages[1][1]


def test_peaks_and_averages():
    monitor = sampled([(10.0, 20.0), (30.0, 60.0)])
    assert monitor.summary() == {"peak_cpu": 30.0, "peak_memory": 60.0, "avg_cpu": 20.0, "avg_memory": 40.0}


def test_start_and_stop_lifecycle():
    monitor = ResourceMonitor(interval=0.01, sampler=ScriptedSampler([(12.0, 34.0)]))

    async def _run():
        await monitor.start()
        assert monitor.running
        await asyncio.sleep(0.05)
        await monitor.stop()

    asyncio.run(_run())
    assert not monitor.running
    assert len(monitor.samples) >= 1
    assert monitor.current_metrics().cpu == 12.0
