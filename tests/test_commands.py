"""Tests for the command channel."""

import pytest

from smarthome_edge.commands import ChannelState, CommandChannel
from smarthome_edge.core.errors import NotConnected, TransportFailure


@pytest.mark.asyncio
async def test_send_without_stream_raises_not_connected() -> None:
    channel = CommandChannel(command_delay=0)

    with pytest.raises(NotConnected):
        await channel.send("FAN_ON")


@pytest.mark.asyncio
async def test_ready_send_writes_immediately_and_goes_busy(make_stream) -> None:
    stream = make_stream()
    channel = CommandChannel(command_delay=0)
    channel.attach(stream)

    assert await channel.send("BUZZER_ON") is True

    assert stream.writes == [b"BUZZER_ON\n"]
    assert channel.state is ChannelState.BUSY


@pytest.mark.asyncio
async def test_busy_send_queues_until_ack(make_stream, until) -> None:
    stream = make_stream()
    channel = CommandChannel(command_delay=0)
    channel.attach(stream)

    await channel.send("FAN_ON")
    assert await channel.send("RELAY_ON") is False
    assert await channel.send("BUZZER_OFF") is False
    assert channel.pending() == ["RELAY_ON", "BUZZER_OFF"]
    assert stream.commands == ["FAN_ON"]

    assert channel.acknowledge() == "RELAY_ON"
    await until(lambda: len(stream.writes) == 2)
    assert channel.state is ChannelState.BUSY
    assert channel.pending_count == 1

    assert channel.acknowledge() == "BUZZER_OFF"
    await until(lambda: len(stream.writes) == 3)

    assert channel.acknowledge() is None
    assert channel.state is ChannelState.READY
    assert stream.commands == ["FAN_ON", "RELAY_ON", "BUZZER_OFF"]


@pytest.mark.asyncio
async def test_ack_with_empty_queue_returns_to_ready(make_stream) -> None:
    stream = make_stream()
    channel = CommandChannel(command_delay=0)
    channel.attach(stream)
    await channel.send("FAN_ON")

    assert channel.acknowledge() is None
    assert channel.state is ChannelState.READY

    assert await channel.send("FAN_OFF") is True


@pytest.mark.asyncio
async def test_send_write_failure_raises_transport_failure(make_stream) -> None:
    stream = make_stream()
    stream.failing_writes = 1
    channel = CommandChannel(command_delay=0)
    channel.attach(stream)

    with pytest.raises(TransportFailure):
        await channel.send("FAN_ON")

    assert channel.state is ChannelState.READY


@pytest.mark.asyncio
async def test_failed_queued_write_moves_to_next_command(make_stream, until) -> None:
    stream = make_stream()
    channel = CommandChannel(command_delay=0)
    channel.attach(stream)
    await channel.send("FAN_ON")
    await channel.send("RELAY_ON")
    await channel.send("BUZZER_ON")

    stream.failing_writes = 1
    channel.acknowledge()
    await until(lambda: len(stream.writes) == 2)

    assert stream.commands == ["FAN_ON", "BUZZER_ON"]
    assert channel.state is ChannelState.BUSY


@pytest.mark.asyncio
async def test_detach_drops_queue_and_cancels_pending_transmissions(make_stream) -> None:
    stream = make_stream()
    channel = CommandChannel(command_delay=10)
    channel.attach(stream)
    await channel.send("FAN_ON")
    await channel.send("RELAY_ON")
    await channel.send("BUZZER_ON")
    channel.acknowledge()

    dropped = await channel.detach()

    assert dropped == 1
    assert channel.pending() == []
    assert channel.state is ChannelState.READY
    assert not channel.is_attached
    assert stream.commands == ["FAN_ON"]


@pytest.mark.asyncio
async def test_invalid_command_is_rejected_before_queueing(make_stream) -> None:
    stream = make_stream()
    channel = CommandChannel(command_delay=0)
    channel.attach(stream)

    with pytest.raises(ValueError):
        await channel.send("  ")

    assert stream.writes == []
    assert channel.state is ChannelState.READY
