import asyncio
import json

import pytest

from bitroute.errors import SignalingUnavailable
from bitroute.signaling import SignalingClient, SignalingMessage, SignalingMessageType

from fakes import FlakyConnector

URLS = ['wss://a.test', 'wss://b.test', 'wss://c.test', 'wss://d.test']


# === Protocol ===

def test_message_omits_unset_fields():
    data = SignalingMessage.create('abc12345').to_dict()
    assert data == {'type': 'create', 'roomId': 'abc12345'}


def test_offer_uses_wire_field_names():
    jwk = {'kty': 'RSA', 'n': 'xyz', 'e': 'AQAB'}
    data = json.loads(SignalingMessage.offer('room1', 'v=0', jwk).to_json())

    assert data['type'] == 'offer'
    assert data['roomId'] == 'room1'
    assert data['sdp'] == 'v=0'
    assert data['publicKey'] == jwk


def test_parse_message_from_relay():
    message = SignalingMessage.from_json(
        '{"type": "ice_candidate", "roomId": "r", "candidate": {"candidate": "c", "sdpMid": "0"}}'
    )
    assert message.type == SignalingMessageType.ICE_CANDIDATE
    assert message.room_id == 'r'
    assert message.candidate == {'candidate': 'c', 'sdpMid': '0'}


@pytest.mark.parametrize('raw', ['{"type": "bogus"}', '[1, 2]', 'not json', '{}'])
def test_parse_rejects_unknown_messages(raw):
    with pytest.raises(ValueError):
        SignalingMessage.from_json(raw)


# === Client ===

async def test_fails_over_to_next_endpoint(relay):
    connector = FlakyConnector(relay, reachable={URLS[3]})
    client = SignalingClient(URLS, connector=connector, retry_delay=0)

    await client.connect()

    assert connector.calls == URLS
    assert client.is_connected
    assert client.current_url == URLS[3]
    assert client.start_index == 3
    await client.close()


async def test_reconnect_starts_at_last_good_endpoint(relay):
    connector = FlakyConnector(relay, reachable={URLS[2]})
    client = SignalingClient(URLS, connector=connector, retry_delay=0)

    await client.connect()
    await client.close()
    connector.calls.clear()

    await client.connect()
    assert connector.calls == [URLS[2]]
    await client.close()


async def test_sticky_index_wraps_around(relay):
    connector = FlakyConnector(relay, reachable={URLS[2]})
    client = SignalingClient(URLS, connector=connector, retry_delay=0)
    await client.connect()
    await client.close()

    connector.reachable = {URLS[1]}
    connector.calls.clear()
    await client.connect()

    assert connector.calls == [URLS[2], URLS[3], URLS[0], URLS[1]]
    assert client.start_index == 1
    await client.close()


async def test_all_endpoints_down_raises(relay):
    connector = FlakyConnector(relay, reachable=set())
    client = SignalingClient(URLS, connector=connector, max_retries=2, retry_delay=0)

    with pytest.raises(SignalingUnavailable):
        await client.connect()

    assert connector.calls == URLS * 2
    assert not client.is_connected


async def test_hanging_endpoint_times_out(relay):
    connector = FlakyConnector(relay, reachable={URLS[1]}, hanging={URLS[0]})
    client = SignalingClient(URLS[:2], connector=connector, connect_timeout=0.05)

    await client.connect()

    assert client.current_url == URLS[1]
    await client.close()


def test_requires_at_least_one_url():
    with pytest.raises(ValueError):
        SignalingClient([])


async def test_send_before_connect_raises():
    client = SignalingClient(URLS)
    with pytest.raises(SignalingUnavailable):
        await client.send(SignalingMessage.create('room'))


async def test_messages_reach_handlers_in_order(relay):
    client = SignalingClient(URLS[:1], connector=relay.connect)
    received = []
    done = asyncio.Event()

    async def handler(message):
        received.append(message)
        if len(received) == 2:
            done.set()

    client.on_message(handler)
    connection = await client.connect()

    connection.deliver({'type': 'room_created'})
    connection.deliver({'type': 'error', 'message': 'boom'})
    await asyncio.wait_for(done.wait(), 1)

    assert [m.type for m in received] == [
        SignalingMessageType.ROOM_CREATED, SignalingMessageType.ERROR,
    ]
    assert received[1].message == 'boom'
    await client.close()


async def test_malformed_messages_are_skipped(relay):
    client = SignalingClient(URLS[:1], connector=relay.connect)
    received = []
    done = asyncio.Event()

    async def handler(message):
        received.append(message)
        done.set()

    client.on_message(handler)
    connection = await client.connect()

    connection.incoming.put_nowait('not json at all')
    connection.incoming.put_nowait('{"type": "unknown"}')
    connection.deliver({'type': 'room_joined'})
    await asyncio.wait_for(done.wait(), 1)

    assert [m.type for m in received] == [SignalingMessageType.ROOM_JOINED]
    await client.close()


async def test_round_trip_through_relay(relay):
    client = SignalingClient(URLS[:1], connector=relay.connect)
    replies = asyncio.Queue()

    async def handler(message):
        await replies.put(message)

    client.on_message(handler)
    await client.connect()
    await client.send(SignalingMessage.create('room42'))

    reply = await asyncio.wait_for(replies.get(), 1)
    assert reply.type == SignalingMessageType.ROOM_CREATED
    assert 'room42' in relay.rooms
    await client.close()


async def test_close_handler_runs_when_relay_drops(relay):
    client = SignalingClient(URLS[:1], connector=relay.connect)
    closed = asyncio.Event()
    client.on_close(closed.set)

    connection = await client.connect()
    connection.drop()
    await asyncio.wait_for(closed.wait(), 1)

    assert not client.is_connected


async def test_close_handler_not_run_on_local_close(relay):
    client = SignalingClient(URLS[:1], connector=relay.connect)
    calls = []
    client.on_close(lambda: calls.append(True))

    await client.connect()
    await client.close()
    await asyncio.sleep(0)

    assert calls == []
