#!/usr/bin/env python3
"""Tests for common.py - shared utilities.

Tests verify:
1. call_with_retry retries only the listed exceptions
2. Exponential backoff between attempts
3. wait_until polling, timeout and cancellation
"""

import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import ActionResult, call_with_retry, wait_until
from providers.base import ProviderError, TransientProviderError


class TestActionResult:
    """Test ActionResult defaults."""

    def test_defaults(self):
        result = ActionResult(success=True)
        assert result.message == ''
        assert result.attributes == {}


class TestCallWithRetry:
    """Test call_with_retry utility."""

    @patch('common.time.sleep')
    def test_success_first_try(self, mock_sleep):
        func = MagicMock(return_value='ok')
        assert call_with_retry(func, retry_on=(TransientProviderError,)) == 'ok'
        assert func.call_count == 1
        mock_sleep.assert_not_called()

    @patch('common.time.sleep')
    def test_retries_then_succeeds(self, mock_sleep):
        func = MagicMock(side_effect=[
            TransientProviderError('Throttling', 'slow down'),
            TransientProviderError('Throttling', 'slow down'),
            'ok',
        ])
        assert call_with_retry(func, retry_on=(TransientProviderError,), retries=3, backoff=1.0) == 'ok'
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @patch('common.time.sleep')
    def test_exhausted_reraises(self, mock_sleep):
        func = MagicMock(side_effect=TransientProviderError('Throttling', 'slow down'))
        with pytest.raises(TransientProviderError):
            call_with_retry(func, retry_on=(TransientProviderError,), retries=2, backoff=0)
        assert func.call_count == 3

    @patch('common.time.sleep')
    def test_other_errors_not_retried(self, mock_sleep):
        func = MagicMock(side_effect=ProviderError('AccessDenied', 'no'))
        with pytest.raises(ProviderError):
            call_with_retry(func, retry_on=(TransientProviderError,), retries=5)
        assert func.call_count == 1


class TestWaitUntil:
    """Test wait_until polling."""

    def test_immediate(self):
        assert wait_until(lambda: True, timeout=1, interval=0) is True

    def test_eventually_true(self):
        results = iter([False, False, True])
        assert wait_until(lambda: next(results), timeout=5, interval=0) is True

    def test_timeout(self):
        predicate = MagicMock(return_value=False)
        assert wait_until(predicate, timeout=0, interval=0) is False
        assert predicate.call_count == 1

    def test_cancel(self):
        cancel = threading.Event()
        cancel.set()
        predicate = MagicMock(return_value=False)
        assert wait_until(predicate, timeout=60, interval=30, cancel=cancel) is False
        assert predicate.call_count == 1
