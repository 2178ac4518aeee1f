# [文件名: sink.py]
# Pipeline stage base class: a bounded input queue drained by worker threads,
# each processed message fanned out to the downstream stages.

import logging
import os
import threading
from collections import Counter

from crfcaller.errors import DeviceError, PipelineError, RecordError
from crfcaller.pipeline.messages import TERMINAL
from crfcaller.pipeline.work_queue import WorkQueue

logger = logging.getLogger(__name__)


class MessageSink:
    """
    Subclasses implement ``process(message)``, returning an iterable of output
    messages (or None). Workers start on the first message.

    Shutdown: pushing ``TERMINAL`` (or calling ``terminate``) closes the queue; the
    workers drain it, the last one to exit sends one ``TERMINAL`` to every
    downstream sink, and the call returns once all workers have been joined.

    Errors raised by ``process``:
        RecordError   the message is skipped, logged as a warning and counted.
        DeviceError   fatal for the stage: queued input is dropped, shutdown runs as
                      usual and the error is re-raised by ``terminate``/``join``.
        anything else logged with traceback and counted as failed; processing goes on.
    """

    def __init__(self, max_messages, num_worker_threads=1, sinks=(), name=None, logger=None):
        if num_worker_threads == 0:
            num_worker_threads = os.cpu_count() or 1
        self.name = name or type(self).__name__
        self.logger = logger or logging.getLogger(__name__)
        self.num_worker_threads = num_worker_threads
        self.sinks = [sinks] if isinstance(sinks, MessageSink) else list(sinks)
        self.stats = Counter()
        self.error = None
        self._queue = WorkQueue(max_messages)
        self._lock = threading.Lock()
        self._workers = []
        self._started = False
        self._active_threads = 0
        self._terminal_received = False
        self._terminal_sent = False

    def process(self, message):
        raise NotImplementedError

    # --- 输入 ---
    def push_message(self, message):
        if message is TERMINAL:
            self.terminate()
            return
        if self.error is not None:
            raise PipelineError(f"{self.name} has failed") from self.error
        self.start()
        if not self._queue.push(message):
            raise PipelineError(f"{self.name} is shut down and no longer accepts messages")

    def start(self):
        with self._lock:
            if self._started:
                return
            self._started = True
            self._active_threads = self.num_worker_threads
            for i in range(self.num_worker_threads):
                worker = threading.Thread(target=self._worker, name=f"{self.name}-{i}", daemon=True)
                self._workers.append(worker)
                worker.start()

    # --- 关闭 ---
    def terminate(self):
        with self._lock:
            repeated = self._terminal_received
            self._terminal_received = True
        if not repeated:
            self.start()
            self._queue.terminate()
        self.join()

    def join(self):
        current = threading.current_thread()
        for worker in self._workers:
            if worker is not current:
                worker.join()
        if self.error is not None:
            raise self.error

    @property
    def terminated(self):
        return self._terminal_received

    # --- 工作线程 ---
    def _worker(self):
        try:
            while True:
                message = self._queue.pop()
                if message is None:
                    break
                if self.error is not None:
                    self._count('dropped')
                    continue
                self._handle(message)
        finally:
            with self._lock:
                self._active_threads -= 1
                last = self._active_threads == 0 and not self._terminal_sent
                if last:
                    self._terminal_sent = True
            if last:
                self._send_terminal()

    def _handle(self, message):
        try:
            outputs = self.process(message)
            if outputs is not None:
                for output in outputs:
                    self.send(output)
            self._count('processed')
        except RecordError as e:
            self._count('skipped')
            self.logger.warning("%s: skipping message: %s", self.name, e)
        except (DeviceError, PipelineError) as e:
            self._count('failed')
            self._fail(e)
        except Exception:
            self._count('failed')
            self.logger.exception("%s: failed to process message", self.name)

    def _fail(self, error):
        with self._lock:
            first = self.error is None
            if first:
                self.error = error
        if first:
            self.logger.error("%s: fatal error, shutting down: %s", self.name, error)
            self._queue.terminate()
            dropped = self._queue.clear()
            if dropped:
                self._count('dropped', dropped)

    def _count(self, key, n=1):
        with self._lock:
            self.stats[key] += n

    def send(self, message):
        for sink in self.sinks:
            sink.push_message(message)

    def _send_terminal(self):
        for sink in self.sinks:
            try:
                sink.push_message(TERMINAL)
            except Exception as e:
                # the downstream stage keeps its own error; record it here as well
                if self.error is None:
                    self.error = e
