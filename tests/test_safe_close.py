import threading
import time

from dnsrelay.safe_close import SafeClose


def _close_in_thread(sc):
    t = threading.Thread(target=sc.close_wait, daemon=True)
    t.start()
    return t


def test_close_wait_waits_for_attached_and_done():
    sc = SafeClose()
    finished = []

    def worker(done, signal):
        signal.wait()
        time.sleep(0.05)
        finished.append("worker")
        done()

    def service():
        sc.receive_close_signal().wait()
        finished.append("service")
        sc.done()

    threading.Thread(target=service, daemon=True).start()
    sc.attach(worker)
    t = _close_in_thread(sc)
    t.join(5)
    assert not t.is_alive()
    assert sorted(finished) == ["service", "worker"]


def test_close_wait_blocks_until_done():
    sc = SafeClose()
    t = _close_in_thread(sc)
    t.join(0.1)
    assert t.is_alive()
    assert sc.receive_close_signal().is_set()
    sc.done()
    t.join(5)
    assert not t.is_alive()


def test_send_close_signal_keeps_first_error():
    sc = SafeClose()
    first = RuntimeError("first")
    second = RuntimeError("second")
    sc.send_close_signal(first)
    sc.send_close_signal(second)
    assert sc.err is first
    assert sc.receive_close_signal().is_set()


def test_attach_after_close_does_not_run():
    sc = SafeClose()
    calls = []
    sc.send_close_signal(None)
    sc.attach(lambda done, signal: calls.append(1) or done())
    time.sleep(0.05)
    assert calls == []
    sc.done()
    t = _close_in_thread(sc)
    t.join(5)
    assert not t.is_alive()


def test_done_and_close_wait_repeatable():
    sc = SafeClose()
    sc.done()
    sc.done()
    first = _close_in_thread(sc)
    first.join(5)
    second = _close_in_thread(sc)
    second.join(5)
    assert not first.is_alive()
    assert not second.is_alive()
    assert sc.err is None