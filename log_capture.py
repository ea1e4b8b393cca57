import logging
import threading
from contextlib import ContextDecorator
from typing import List, Optional


class _JobHandler(logging.Handler):
    def __init__(self, capture: "JobLogCapture"):
        super().__init__(level=capture.level)
        self.capture = capture

    def emit(self, record: logging.LogRecord) -> None:
        if not self.capture.owns(record):
            return
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self.capture._lock:
            if len(self.capture.messages) < self.capture.max_messages:
                self.capture.messages.append(message)
            else:
                self.capture.dropped += 1


class JobLogCapture(ContextDecorator):
    """Collect WARNING+ log lines emitted while a batch job runs.

    Only records from the thread that entered the context, or from worker
    threads whose name starts with ``thread_prefix``, are kept so parallel
    jobs do not see each other's warnings.
    """

    def __init__(
        self,
        job_id: Optional[str] = None,
        *,
        thread_prefix: Optional[str] = None,
        level: int = logging.WARNING,
        max_messages: int = 500,
    ):
        self.job_id = job_id
        self.thread_prefix = thread_prefix
        self.level = level
        self.max_messages = max_messages
        self.messages: List[str] = []
        self.dropped = 0
        self._lock = threading.Lock()
        self._owner_thread: Optional[int] = None
        self._handler: Optional[_JobHandler] = None

    def owns(self, record: logging.LogRecord) -> bool:
        if record.thread == self._owner_thread:
            return True
        return bool(self.thread_prefix) and (record.threadName or "").startswith(self.thread_prefix)

    def __enter__(self):
        self._owner_thread = threading.get_ident()
        self._handler = _JobHandler(self)
        self._handler.setFormatter(logging.Formatter("%(levelname)s | %(message)s"))
        logging.getLogger().addHandler(self._handler)
        logging.debug("JobLogCapture start for job %s", self.job_id)
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc:
            logging.debug("JobLogCapture caught exception: %s", exc)
        logging.debug("JobLogCapture end for job %s", self.job_id)
        if self._handler is not None:
            logging.getLogger().removeHandler(self._handler)
            self._handler = None
        # Do not suppress exceptions
        return False
