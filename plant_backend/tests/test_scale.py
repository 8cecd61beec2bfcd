from __future__ import annotations

import asyncio

import pytest

from plant_backend.errors import DeviceUnavailable, ValidationFailed
from plant_backend.scale import (
    BridgeConfig,
    ConnectionTracker,
    ScaleBridgeAdapter,
    WeightMonitor,
    bridge_base_url,
    normalize_weight_payload,
)


@pytest.fixture()
def adapter(bridge):
    return ScaleBridgeAdapter(
        lambda warehouse_id: BridgeConfig(url="http://bridge.test:5055", api_key="secret"),
        disconnect_after=2,
        transport=bridge.transport,
    )


def test_both_payload_shapes_normalize_to_one_reading() -> None:
    legacy = normalize_weight_payload({"weight": 1520.5, "connected": True})
    modern = normalize_weight_payload({"weight": 1.5205, "unit": "t", "stable": False})

    assert legacy.weight_kg == pytest.approx(1520.5)
    assert legacy.is_connected is True
    assert legacy.is_stable is True
    assert modern.weight_kg == pytest.approx(1520.5)
    assert modern.is_connected is True
    assert modern.is_stable is False

    offline = normalize_weight_payload({"weight": 0, "connected": False})
    assert offline.is_connected is False
    assert offline.is_stable is False

    with pytest.raises(ValueError):
        normalize_weight_payload({"connected": True})
    with pytest.raises(ValueError):
        normalize_weight_payload({"weight": 10, "unit": "stone"})


def test_bridge_address_defaults_to_bridge_port() -> None:
    assert bridge_base_url("10.0.0.5") == "http://10.0.0.5:5055"
    assert bridge_base_url("10.0.0.5:6000") == "http://10.0.0.5:6000"
    assert bridge_base_url("https://scale.example.org/") == "https://scale.example.org"


def test_tracker_needs_consecutive_failures() -> None:
    tracker = ConnectionTracker(disconnect_after=2)
    tracker.record_success(True)
    tracker.record_failure()
    assert tracker.is_connected is True
    tracker.record_success(True)
    tracker.record_failure()
    assert tracker.is_connected is True
    tracker.record_failure()
    assert tracker.is_connected is False


@pytest.mark.anyio
async def test_disconnected_only_after_two_failed_polls(adapter, bridge) -> None:
    bridge.weight = 800.0
    reading = await adapter.read_current_weight(1)
    assert reading.is_connected is True
    assert reading.weight_kg == 800

    bridge.fail_polls = True
    first = await adapter.read_current_weight(1)
    assert first.is_connected is True
    assert first.weight_kg == 0

    second = await adapter.read_current_weight(1)
    assert second.is_connected is False

    bridge.fail_polls = False
    bridge.modern_payload = True
    recovered = await adapter.read_current_weight(1)
    assert recovered.is_connected is True
    await adapter.aclose()


@pytest.mark.anyio
async def test_same_capture_token_weighs_once(adapter, bridge) -> None:
    bridge.delay = 0.05
    bridge.capture_weights.extend([1000.0, 1111.0])

    first, second = await asyncio.gather(
        adapter.capture_weight(1, "gross", order_ref=9, capture_token="tok-1"),
        adapter.capture_weight(1, "gross", order_ref=9, capture_token="tok-1"),
    )
    retried = await adapter.capture_weight(1, "gross", order_ref=9, capture_token="tok-1")

    assert first == second == retried
    assert first.weight_kg == 1000
    assert len(bridge.commands) == 1
    command = bridge.commands[0]
    assert command["body"] == {"action": "brutto", "orderId": 9}
    assert command["token"] == "tok-1"
    await adapter.aclose()


@pytest.mark.anyio
async def test_capture_failure_raises_device_unavailable(adapter, bridge) -> None:
    bridge.fail_commands = True
    with pytest.raises(DeviceUnavailable):
        await adapter.capture_weight(1, "tare", capture_token="tok-2")

    with pytest.raises(ValidationFailed):
        await adapter.capture_weight(1, "net")
    await adapter.aclose()


@pytest.mark.anyio
async def test_unanswered_command_is_never_posted_twice(adapter, bridge) -> None:
    bridge.drop_command_replies = True
    with pytest.raises(DeviceUnavailable):
        await adapter.capture_weight(1, "gross", capture_token="tok-3")

    bridge.drop_command_replies = False
    bridge.weight = 1250.0
    settled = await adapter.capture_weight(1, "gross", capture_token="tok-3")
    again = await adapter.capture_weight(1, "gross", capture_token="tok-3")

    assert settled.weight_kg == 1250
    assert settled.photo_ref is None
    assert again == settled
    assert len(bridge.commands) == 1
    await adapter.aclose()


@pytest.mark.anyio
async def test_refused_command_frees_token_and_its_lock(bridge) -> None:
    adapter = ScaleBridgeAdapter(
        lambda warehouse_id: BridgeConfig(url="http://bridge.test:5055"),
        token_ttl=0.0,
        transport=bridge.transport,
    )
    bridge.fail_commands = True
    for token in ("tok-a", "tok-b"):
        with pytest.raises(DeviceUnavailable):
            await adapter.capture_weight(1, "gross", capture_token=token)
    assert "tok-a" not in adapter._token_locks

    bridge.fail_commands = False
    bridge.weight = 700.0
    captured = await adapter.capture_weight(1, "gross", capture_token="tok-b")
    assert captured.weight_kg == 700
    assert [c["token"] for c in bridge.commands] == ["tok-a", "tok-b", "tok-b"]
    await adapter.aclose()


@pytest.mark.anyio
async def test_health_check_reports_unreachable_bridge(adapter, bridge) -> None:
    assert (await adapter.check_health(1))["status"] == "ok"

    bridge.fail_polls = True
    with pytest.raises(DeviceUnavailable):
        await adapter.check_health(1)
    await adapter.aclose()


@pytest.mark.anyio
async def test_monitor_stream_stops_at_limit(adapter, bridge) -> None:
    bridge.weight = 420.0
    monitor = WeightMonitor(adapter, interval=0)

    readings = [reading async for reading in monitor.stream(1, limit=3)]

    assert [reading.weight_kg for reading in readings] == [420.0, 420.0, 420.0]
    await adapter.aclose()
