import asyncio

import pytest

from airzone_client.link_session import Disconnected, LinkSession, LinkState
from airzone_client.watchdog import Watchdog
from conftest import FakeConnector, drain, settle


async def connected_session(connector):
    session = LinkSession("ws://127.0.0.1:1606/ws", connect=connector)
    await session.start()
    await settle()
    assert session.state is LinkState.CONNECTED
    drain(session.events)
    # From here on the server stops answering
    connector.auto_ack = False
    connector.last.auto_ack = False
    return session


def count_opens(session):
    calls = []
    original = session.open

    def counting_open():
        calls.append(1)
        return original()

    session.open = counting_open
    return calls


@pytest.mark.asyncio
async def test_three_missed_ticks_reconnect_once():
    connector = FakeConnector()
    session = await connected_session(connector)
    opens = count_opens(session)
    watchdog = Watchdog(session, interval=1.0, threshold=2)

    watchdog.tick()
    await settle()
    watchdog.tick()
    await settle()
    assert session.state is LinkState.CONNECTED
    assert opens == []

    watchdog.tick()
    await settle()

    assert len(opens) == 1
    assert session.state is LinkState.CONNECTING
    assert session.missed_probes == 0
    assert [e for e in drain(session.events) if isinstance(e, Disconnected)] == [
        Disconnected("heartbeat timeout (3 probes unanswered)")
    ]
    assert len(connector.connections) == 2
    assert watchdog.timeouts == 1
    await session.close()


@pytest.mark.asyncio
async def test_ticks_send_probes():
    connector = FakeConnector()
    session = await connected_session(connector)
    watchdog = Watchdog(session)

    watchdog.tick()
    await settle()
    watchdog.tick()
    await settle()

    assert connector.last.sent == ["alive?", "alive?", "alive?"]
    assert session.missed_probes == 2
    await session.close()


@pytest.mark.asyncio
async def test_missed_tick_then_ack_does_not_reconnect():
    connector = FakeConnector()
    session = await connected_session(connector)
    opens = count_opens(session)
    watchdog = Watchdog(session, threshold=2)

    watchdog.tick()
    await settle()
    connector.last.feed("alive")
    await settle()
    assert session.missed_probes == 0

    watchdog.tick()
    await settle()
    watchdog.tick()
    await settle()

    assert opens == []
    assert session.state is LinkState.CONNECTED
    assert drain(session.events) == []
    await session.close()


@pytest.mark.asyncio
async def test_tick_while_disconnected_does_nothing():
    connector = FakeConnector()
    session = LinkSession("ws://127.0.0.1:1606/ws", connect=connector)
    watchdog = Watchdog(session)

    for _ in range(5):
        watchdog.tick()

    assert session.state is LinkState.DISCONNECTED
    assert session.missed_probes == 0
    assert connector.calls == []


@pytest.mark.asyncio
async def test_unanswered_handshake_times_out():
    connector = FakeConnector(auto_ack=False)
    session = LinkSession("ws://127.0.0.1:1606/ws", connect=connector)
    await session.start()
    await settle()
    watchdog = Watchdog(session, threshold=2)

    for _ in range(3):
        watchdog.tick()
        await settle()

    assert len(connector.connections) == 2
    assert connector.connections[0].closed
    # Handshake probes only, no heartbeat probes while connecting
    assert connector.connections[0].sent == ["alive?"]
    assert session.state is LinkState.CONNECTING
    await session.close()


@pytest.mark.asyncio
async def test_background_ticks():
    connector = FakeConnector()
    session = await connected_session(connector)
    watchdog = Watchdog(session, interval=0.01, threshold=2)

    await watchdog.start()
    await asyncio.sleep(0.2)
    await watchdog.stop()

    assert len(connector.connections) >= 2
    await session.close()
