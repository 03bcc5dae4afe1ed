"""Tests for the background sudo credential refresh"""

import threading
import pytest
from unittest.mock import Mock, patch
from buildemacs import BuildError, CommandError, SudoKeepAlive, logging


@pytest.fixture
def keepalive():
    keepalive = SudoKeepAlive(interval=0.01)
    keepalive.log = Mock(spec=logging.Logger)
    return keepalive


def test_validates_credentials_on_enter(keepalive):
    with patch.object(keepalive, 'cmd') as mock_cmd, \
         patch.object(keepalive, 'succeeds', return_value=True):
        with keepalive:
            assert keepalive.is_running
        mock_cmd.assert_called_once_with(['sudo', '-v'])
    assert not keepalive.is_running


def test_refreshes_periodically(keepalive):
    refreshed = threading.Event()

    def succeeds(args):
        refreshed.set()
        return True

    with patch.object(keepalive, 'cmd'), \
         patch.object(keepalive, 'succeeds', side_effect=succeeds) as mock_succeeds:
        with keepalive:
            assert refreshed.wait(timeout=5)
        mock_succeeds.assert_called_with(['sudo', '-n', '-v'])
    assert not keepalive.is_running


def test_failed_refresh_only_warns(keepalive):
    refreshed = threading.Event()

    def succeeds(args):
        refreshed.set()
        return False

    with patch.object(keepalive, 'cmd'), \
         patch.object(keepalive, 'succeeds', side_effect=succeeds):
        with keepalive:
            assert refreshed.wait(timeout=5)
    keepalive.log.warning.assert_called_with("could not refresh sudo credentials")


def test_stopped_when_body_raises(keepalive):
    with patch.object(keepalive, 'cmd'), \
         patch.object(keepalive, 'succeeds', return_value=True):
        with pytest.raises(BuildError):
            with keepalive:
                assert keepalive.is_running
                raise BuildError("step failed")
    assert not keepalive.is_running


def test_initial_validation_failure_starts_nothing(keepalive):
    with patch.object(keepalive, 'cmd', side_effect=CommandError("sudo -v")):
        with pytest.raises(CommandError):
            with keepalive:
                pytest.fail("body must not run")
    assert not keepalive.is_running


def test_stop_without_start(keepalive):
    keepalive.stop()
    assert not keepalive.is_running
