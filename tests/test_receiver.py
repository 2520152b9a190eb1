import asyncio
import json

import pytest

from bitroute.crypto import encrypt
from bitroute.transfer import (
    ReceiveAssembler, ReceivedFile, TransferEngine, TransferStatus, guess_mime_type,
)
from bitroute.transfer.sender import KIB

from fakes import ScriptedSession, link


def control(**fields) -> str:
    return json.dumps(fields)


def send_chunk(session, transfer_id, plaintext, public_key):
    sealed = encrypt(plaintext, public_key)
    session.deliver(control(type='chunk_header', id=transfer_id,
                            iv=sealed.iv_b64, size=len(sealed.payload)))
    session.deliver(sealed.payload)


@pytest.fixture
def inbox():
    return []


@pytest.fixture
def events():
    return []


@pytest.fixture
def receiving(receiver_keys, inbox, events):
    session = ScriptedSession(key_pair=receiver_keys)
    assembler = ReceiveAssembler(session, inbox.append, events.append)
    return session, assembler


@pytest.mark.parametrize('name, expected', [
    ('report.pdf', 'application/pdf'),
    ('PHOTO.JPG', 'image/jpeg'),
    ('archive.tar.gz', 'application/gzip'),
    ('clip.webm', 'video/webm'),
    ('README', 'application/octet-stream'),
    ('data.unknownext', 'application/octet-stream'),
])
def test_mime_type_from_extension(name, expected):
    assert guess_mime_type(name) == expected


async def test_files_survive_the_full_pipeline(make_file, sender_keys, receiver_keys):
    sending = ScriptedSession(peer_public_key=receiver_keys.public_key, key_pair=sender_keys)
    receiving = ScriptedSession(peer_public_key=sender_keys.public_key, key_pair=receiver_keys)
    link(sending, receiving)

    inbox = []
    engine = TransferEngine(sending, buffer_poll_interval=0.01, error_backoff=0)
    ReceiveAssembler(receiving, inbox.append)

    paths = [
        make_file('small.txt', 100),
        make_file('exact.bin', 64 * KIB),
        make_file('photo.png', 2 * 1024 * KIB + 7),
    ]
    engine.add_files(paths)
    await engine.join()

    assert [f.name for f in inbox] == ['small.txt', 'exact.bin', 'photo.png']
    for received, path in zip(inbox, paths):
        assert received.data == path.read_bytes()
        assert received.size == path.stat().st_size
    assert inbox[2].mime_type == 'image/png'
    assert receiving.inbound == {}


async def test_ack_follows_each_chunk(receiving, receiver_keys):
    session, assembler = receiving
    session.deliver(control(type='file_info', id='t1', name='a.bin', size=300, chunkSize=200))

    send_chunk(session, 't1', b'a' * 200, receiver_keys.public_key)
    send_chunk(session, 't1', b'b' * 100, receiver_keys.public_key)

    assert session.controls('ack') == [
        {'type': 'ack', 'id': 't1', 'progress': 66},
        {'type': 'ack', 'id': 't1', 'progress': 100},
    ]


async def test_file_delivered_on_complete(receiving, receiver_keys, inbox, events):
    session, assembler = receiving
    session.deliver(control(type='file_info', id='t1', name='hello.txt', size=11, chunkSize=64))
    send_chunk(session, 't1', b'hello world', receiver_keys.public_key)

    assert inbox == []
    session.deliver(control(type='file_complete', id='t1'))

    assert inbox == [ReceivedFile('hello.txt', b'hello world', 'text/plain')]
    assert events[-1].status == TransferStatus.COMPLETED
    assert events[-1].progress == 100
    assert assembler.files_received == 1


async def test_file_info_restarts_transfer(receiving, receiver_keys, inbox):
    session, assembler = receiving
    session.deliver(control(type='file_info', id='t1', name='a.txt', size=6, chunkSize=3))
    send_chunk(session, 't1', b'old', receiver_keys.public_key)

    session.deliver(control(type='file_info', id='t1', name='a.txt', size=6, chunkSize=3))
    send_chunk(session, 't1', b'new', receiver_keys.public_key)
    send_chunk(session, 't1', b'NEW', receiver_keys.public_key)
    session.deliver(control(type='file_complete', id='t1'))

    assert [f.data for f in inbox] == [b'newNEW']


async def test_wrong_key_fails_file_but_not_session(receiving, sender_keys,
                                                    receiver_keys, inbox, events):
    session, assembler = receiving
    session.deliver(control(type='file_info', id='bad', name='x.bin', size=4, chunkSize=4))
    send_chunk(session, 'bad', b'oops', sender_keys.public_key)
    session.deliver(control(type='file_complete', id='bad'))

    assert inbox == []
    assert events[-1].id == 'bad'
    assert events[-1].status == TransferStatus.ERROR

    session.deliver(control(type='file_info', id='good', name='y.bin', size=2, chunkSize=2))
    send_chunk(session, 'good', b'ok', receiver_keys.public_key)
    session.deliver(control(type='file_complete', id='good'))

    assert [f.data for f in inbox] == [b'ok']


async def test_payload_length_mismatch_fails_file(receiving, receiver_keys, inbox, events):
    session, assembler = receiving
    session.deliver(control(type='file_info', id='t1', name='x.bin', size=4, chunkSize=4))
    sealed = encrypt(b'data', receiver_keys.public_key)
    session.deliver(control(type='chunk_header', id='t1', iv=sealed.iv_b64,
                            size=len(sealed.payload) + 1))
    session.deliver(sealed.payload)
    session.deliver(control(type='file_complete', id='t1'))

    assert inbox == []
    assert events[-1].status == TransferStatus.ERROR
    assert 'does not match' in events[-1].error


async def test_short_file_is_not_delivered(receiving, receiver_keys, inbox, events):
    session, assembler = receiving
    session.deliver(control(type='file_info', id='t1', name='x.bin', size=10, chunkSize=5))
    send_chunk(session, 't1', b'12345', receiver_keys.public_key)
    session.deliver(control(type='file_complete', id='t1'))

    assert inbox == []
    assert events[-1].status == TransferStatus.ERROR


async def test_payload_without_header_is_dropped(receiving, receiver_keys, inbox):
    session, assembler = receiving
    session.deliver(control(type='file_info', id='t1', name='x.bin', size=2, chunkSize=2))
    session.deliver(b'stray bytes')
    send_chunk(session, 't1', b'ok', receiver_keys.public_key)
    session.deliver(control(type='file_complete', id='t1'))

    assert [f.data for f in inbox] == [b'ok']


async def test_malformed_control_frames_are_ignored(receiving):
    session, assembler = receiving
    session.deliver('not json')
    session.deliver(control(type='mystery', id='t1'))
    session.deliver(control(type='file_info'))

    assert assembler.transfers == {}


async def test_sender_cancel_discards_partial_file(receiving, receiver_keys, inbox):
    session, assembler = receiving
    session.deliver(control(type='file_info', id='t1', name='x.bin', size=6, chunkSize=3))
    send_chunk(session, 't1', b'abc', receiver_keys.public_key)

    session.deliver(control(type='cancel', id='t1'))

    assert 't1' not in assembler.transfers
    session.deliver(control(type='file_complete', id='t1'))
    assert inbox == []


async def test_receiver_cancel_notifies_sender(receiving):
    session, assembler = receiving
    session.deliver(control(type='file_info', id='t1', name='x.bin', size=6, chunkSize=3))

    assert assembler.cancel_transfer('t1') is True
    assert assembler.cancel_transfer('t1') is False
    assert session.controls('cancel') == [{'type': 'cancel', 'id': 't1'}]


async def test_async_file_callback_is_awaited(receiver_keys):
    session = ScriptedSession(key_pair=receiver_keys)
    saved = asyncio.Event()

    async def on_file(received):
        await asyncio.sleep(0)
        saved.set()

    ReceiveAssembler(session, on_file)
    session.deliver(control(type='file_info', id='t1', name='a.txt', size=1, chunkSize=1))
    send_chunk(session, 't1', b'z', receiver_keys.public_key)
    session.deliver(control(type='file_complete', id='t1'))

    await asyncio.wait_for(saved.wait(), 1)


async def test_save_never_overwrites(tmp_path):
    received = ReceivedFile('notes.txt', b'first')
    again = ReceivedFile('notes.txt', b'second')

    first_path = await received.save(tmp_path)
    second_path = await again.save(tmp_path)

    assert first_path.name == 'notes.txt'
    assert second_path.name == 'notes (1).txt'
    assert first_path.read_bytes() == b'first'
    assert second_path.read_bytes() == b'second'


async def test_save_strips_directories_from_peer_names(tmp_path):
    target = tmp_path / 'inbox'
    path = await ReceivedFile('../../etc/evil.txt', b'x').save(target)

    assert path == target / 'evil.txt'
    assert path.read_bytes() == b'x'


async def test_failing_file_callback_does_not_break_stream(receiver_keys, events):
    session = ScriptedSession(key_pair=receiver_keys)

    def on_file(received):
        raise RuntimeError("ui crashed")

    ReceiveAssembler(session, on_file, events.append)
    session.deliver(control(type='file_info', id='t1', name='a.txt', size=1, chunkSize=1))
    send_chunk(session, 't1', b'z', receiver_keys.public_key)
    session.deliver(control(type='file_complete', id='t1'))

    assert events[-1].status == TransferStatus.COMPLETED


async def test_async_file_callback_errors_are_logged(receiver_keys, caplog):
    session = ScriptedSession(key_pair=receiver_keys)
    failed = asyncio.Event()

    async def on_file(received):
        failed.set()
        raise OSError("disk full")

    assembler = ReceiveAssembler(session, on_file)
    session.deliver(control(type='file_info', id='t1', name='a.txt', size=1, chunkSize=1))
    send_chunk(session, 't1', b'z', receiver_keys.public_key)
    session.deliver(control(type='file_complete', id='t1'))

    await asyncio.wait_for(failed.wait(), 1)
    for _ in range(3):
        await asyncio.sleep(0)

    assert 'disk full' in caplog.text
    assert assembler._callback_tasks == set()
