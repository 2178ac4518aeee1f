import threading
import time

import pytest

from crfcaller.errors import DeviceError, PipelineError, RecordError
from crfcaller.pipeline.messages import TERMINAL, Read, _Terminal
from crfcaller.pipeline.sink import MessageSink
from crfcaller.pipeline.work_queue import WorkQueue

from helpers import MessageSinkToList


class Doubler(MessageSink):
    def process(self, message):
        return [message * 2]


class Gated(MessageSink):
    """Holds every message until ``release`` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.release = threading.Event()

    def process(self, message):
        self.release.wait(5)
        return [message]


class Faulty(MessageSink):
    """Skips odd numbers, fails hard on ``fatal``, crashes on ``crash``."""

    fatal = -1
    crash = -2

    def process(self, message):
        if message == self.fatal:
            raise DeviceError("kernel launch failed")
        if message == self.crash:
            raise KeyError("bug")
        if message % 2:
            raise RecordError(f"odd {message}")
        return [message]


class TestWorkQueue:
    def test_fifo(self):
        queue = WorkQueue(10)
        for i in range(5):
            assert queue.push(i)
        assert [queue.pop() for _ in range(5)] == list(range(5))

    def test_push_blocks_while_full(self):
        queue = WorkQueue(2)
        queue.push(1)
        queue.push(2)
        pushed = threading.Event()

        def producer():
            queue.push(3)
            pushed.set()

        thread = threading.Thread(target=producer)
        thread.start()
        assert not pushed.wait(0.2)
        assert queue.pop() == 1
        assert pushed.wait(5)
        thread.join()
        assert len(queue) == 2

    def test_terminate_drains_then_returns_none(self):
        queue = WorkQueue(4)
        queue.push("a")
        queue.terminate()
        assert queue.terminated
        assert not queue.push("b")
        assert queue.pop() == "a"
        assert queue.pop() is None

    def test_terminate_wakes_blocked_pop(self):
        queue = WorkQueue(1)
        result = []
        thread = threading.Thread(target=lambda: result.append(queue.pop()))
        thread.start()
        time.sleep(0.05)
        queue.terminate()
        thread.join(5)
        assert result == [None]

    def test_rejects_none(self):
        with pytest.raises(ValueError):
            WorkQueue(1).push(None)

    def test_clear(self):
        queue = WorkQueue(5)
        for i in range(3):
            queue.push(i)
        assert queue.clear() == 3
        assert len(queue) == 0


class TestMessages:
    def test_terminal_is_a_singleton(self):
        assert _Terminal() is TERMINAL

    def test_read_defaults(self):
        read = Read("r1")
        assert read.tags == {}
        assert read.model_stride == 1


class TestMessageSink:
    def test_fan_out_and_order(self):
        sink = MessageSinkToList()
        other = MessageSinkToList()
        head = Doubler(10, 1, [sink, other])
        for i in range(50):
            head.push_message(i)
        head.terminate()
        assert sink.get_messages() == [2 * i for i in range(50)]
        assert other.get_messages() == sink.messages
        assert head.stats['processed'] == 50

    def test_single_terminal_from_many_workers(self):
        sink = MessageSinkToList()
        head = Doubler(10, 4, sink)
        for i in range(100):
            head.push_message(i)
        head.push_message(TERMINAL)
        assert sorted(sink.get_messages()) == [2 * i for i in range(100)]
        assert sink.terminals == 1

    def test_push_blocks_until_worker_drains(self):
        sink = MessageSinkToList()
        head = Gated(1, 1, sink)
        head.push_message(1)
        # returns once the worker has taken 1, which it then holds
        head.push_message(2)
        pushed = threading.Event()

        def producer():
            head.push_message(3)
            pushed.set()

        thread = threading.Thread(target=producer)
        thread.start()
        assert not pushed.wait(0.2)
        head.release.set()
        assert pushed.wait(5)
        thread.join()
        head.terminate()
        assert sink.get_messages() == [1, 2, 3]

    def test_workers_joined_on_terminate(self):
        sink = MessageSinkToList()
        head = Doubler(10, 4, sink)
        for i in range(40):
            head.push_message(i)
        head.terminate()
        assert len(head._workers) == 4
        assert not any(worker.is_alive() for worker in head._workers)
        assert not any(worker.is_alive() for worker in sink._workers)

    def test_terminate_is_idempotent(self):
        sink = MessageSinkToList()
        head = Doubler(10, 2, sink)
        head.push_message(1)
        head.terminate()
        head.terminate()
        assert sink.terminals == 1
        assert head.terminated

    def test_terminate_without_messages(self):
        sink = MessageSinkToList()
        head = Doubler(10, 3, sink)
        head.terminate()
        assert sink.get_messages() == []
        assert sink.terminals == 1

    def test_push_after_terminate(self):
        head = Doubler(10, 1)
        head.terminate()
        with pytest.raises(PipelineError):
            head.push_message(1)

    def test_record_errors_skipped(self):
        sink = MessageSinkToList()
        head = Faulty(10, 2, sink)
        for i in range(10):
            head.push_message(i)
        head.push_message(Faulty.crash)
        head.terminate()
        assert sorted(sink.get_messages()) == [0, 2, 4, 6, 8]
        assert head.stats['skipped'] == 5
        assert head.stats['failed'] == 1

    def test_device_error_is_fatal(self):
        sink = MessageSinkToList()
        head = Faulty(1000, 1, sink)
        head.push_message(Faulty.fatal)
        with pytest.raises(DeviceError):
            head.terminate()
        assert head.stats['failed'] == 1
        # the downstream stage is still shut down
        assert sink.terminals == 1
        assert sink.terminated
        with pytest.raises(PipelineError):
            head.push_message(2)

    def test_downstream_failure_propagates(self):
        tail = Faulty(10, 1)
        tail.push_message(Faulty.fatal)
        with pytest.raises(DeviceError):
            tail.terminate()
        head = Doubler(10, 1, tail)
        head.push_message(1)
        with pytest.raises(PipelineError):
            head.terminate()
        assert head.stats["failed"] == 1
