import pytest

from bitroute.transfer import SpeedEstimator, CancellationToken, TransferProgress, TransferStatus
from bitroute.transfer import format_size
from bitroute.transfer.progress import percent_of


def test_speed_is_sampled_at_most_every_interval():
    speed = SpeedEstimator(sample_interval=0.5)
    speed.start(10.0)

    assert speed.update(10.1, 1000) == 0.0
    assert speed.update(10.5, 5000) == pytest.approx(10000.0)
    # Too soon after the last sample: estimate holds
    assert speed.update(10.6, 100000) == pytest.approx(10000.0)
    assert speed.update(11.0, 15000) == pytest.approx(20000.0)


def test_eta_needs_a_speed():
    speed = SpeedEstimator()
    assert speed.eta(1000) is None

    speed.start(0.0)
    speed.update(1.0, 500)
    assert speed.eta(1000) == pytest.approx(2.0)


def test_update_without_start_begins_sampling():
    speed = SpeedEstimator(sample_interval=0.5)
    assert speed.update(3.0, 100) == 0.0
    assert speed.update(4.0, 600) == pytest.approx(500.0)


@pytest.mark.parametrize('done, total, expected', [
    (0, 100, 0), (1, 3, 33), (2, 3, 66), (99, 100, 99), (100, 100, 100),
    (0, 0, 100), (150, 100, 100),
])
def test_percent_is_floored(done, total, expected):
    assert percent_of(done, total) == expected


def test_cancellation_token():
    token = CancellationToken()
    assert not token.cancelled
    token.cancel()
    assert token.cancelled


def test_progress_to_dict():
    event = TransferProgress('t1', 'a.txt', 10, 50, TransferStatus.TRANSFERRING,
                             speed=2.5, eta=2.0, bytes_transferred=5)
    assert event.to_dict() == {
        'id': 't1', 'filename': 'a.txt', 'size': 10, 'progress': 50,
        'status': 'transferring', 'speed': 2.5, 'eta': 2.0,
        'bytes_transferred': 5, 'error': None,
    }
    assert not event.is_terminal


@pytest.mark.parametrize('size, text', [
    (0, '0 B'),
    (512, '512 B'),
    (1024, '1 KB'),
    (1536, '1.5 KB'),
    (5 * 1024 * 1024, '5 MB'),
    (3 * 1024 ** 4, '3 TB'),
])
def test_format_size(size, text):
    assert format_size(size) == text
