import threading
import time

from mockup2code.llm.calls import CallStatus, bounded_call


def test_returns_value_on_first_success() -> None:
    result = bounded_call(lambda: 42, timeout=1.0)

    assert result.ok
    assert result.value == 42
    assert result.attempts == 1


def test_retries_errors_until_budget_is_spent() -> None:
    calls = []

    def _flaky() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("transient")
        return "done"

    assert bounded_call(_flaky, timeout=1.0, retries=2, backoff=0.0).value == "done"

    calls.clear()
    result = bounded_call(_flaky, timeout=1.0, retries=1, backoff=0.0)
    assert result.status is CallStatus.ERROR
    assert "transient" in result.error
    assert result.attempts == 2


def test_slow_call_times_out_without_being_awaited() -> None:
    release = threading.Event()
    started = time.monotonic()

    result = bounded_call(lambda: release.wait(5), timeout=0.2)
    release.set()

    assert result.status is CallStatus.TIMEOUT
    assert time.monotonic() - started < 2.0


def test_cancel_event_abandons_the_call() -> None:
    cancel = threading.Event()
    release = threading.Event()
    timer = threading.Timer(0.1, cancel.set)
    timer.start()

    result = bounded_call(lambda: release.wait(5), timeout=5.0, cancel=cancel)
    release.set()

    assert result.status is CallStatus.CANCELLED


def test_already_cancelled_call_never_runs() -> None:
    cancel = threading.Event()
    cancel.set()
    ran = []

    result = bounded_call(lambda: ran.append(1), timeout=1.0, cancel=cancel)

    assert result.status is CallStatus.CANCELLED
    assert ran == []
