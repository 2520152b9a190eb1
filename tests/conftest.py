import os

import pytest

from bitroute.config import Config
from bitroute.crypto import generate_key_pair

from fakes import MemoryRelay, LoopbackNetwork

RELAY_URL = 'memory://relay'


@pytest.fixture(scope='session')
def sender_keys():
    return generate_key_pair()


@pytest.fixture(scope='session')
def receiver_keys():
    return generate_key_pair()


@pytest.fixture
def relay():
    return MemoryRelay()


@pytest.fixture
def network():
    return LoopbackNetwork()


@pytest.fixture
def fast_config(tmp_path):
    return Config(
        signaling_urls=[RELAY_URL],
        share_base_url='https://share.test',
        connect_timeout=1.0,
        room_timeout=5.0,
        max_retries=1,
        retry_delay=0.0,
        buffer_poll_interval=0.01,
        speed_sample_interval=0.05,
        error_backoff=0.0,
        download_dir=tmp_path / 'downloads',
    )


@pytest.fixture
def make_file(tmp_path):
    """Write a file of random bytes and return its path."""
    def make(name: str, size: int):
        path = tmp_path / name
        path.write_bytes(os.urandom(size))
        return path
    return make
