import json
import logging
import threading
from typing import Callable, Iterable, Iterator, List, Optional

import requests

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs a callback later. call_later returns a handle with cancel()."""

    def call_later(self, delay: float, fn: Callable[[], None]):
        raise NotImplementedError


class ThreadingScheduler(Scheduler):
    def call_later(self, delay: float, fn: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay, fn)
        timer.daemon = True
        timer.start()
        return timer


def iter_sse_data(lines: Iterable[str]) -> Iterator[str]:
    """Yield the data payload of each server-sent event; comments are skipped."""
    data_lines: List[str] = []

    for raw_line in lines:
        if raw_line is None:
            continue
        line = raw_line.strip("\ufeff")

        # Empty line signals dispatch
        if line == "":
            if data_lines:
                yield "\n".join(data_lines)
            data_lines = []
            continue

        if line.startswith(":"):
            continue

        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())

    if data_lines:
        yield "\n".join(data_lines)


class SSEConnection:
    """
    One streaming connection to the server's event stream.

    open() returns immediately; a reader thread reports on_open once the
    server accepts the stream, on_message for each frame and on_close when
    the stream ends for any reason other than close().
    """

    def __init__(
        self,
        url: str,
        on_open: Callable[[], None],
        on_message: Callable[[dict], None],
        on_close: Callable[[str], None],
        messages_url: str = None,
        session: Optional[requests.Session] = None,
        headers: dict = None,
        connect_timeout: float = 10.0
    ):
        self.url = url
        self.messages_url = messages_url or url.rstrip("/") + "/messages"
        self.on_open = on_open
        self.on_message = on_message
        self.on_close = on_close
        self.session = session or requests.Session()
        self.headers = headers or {}
        self.connect_timeout = connect_timeout
        self._response = None
        self._thread = None
        self._closed = threading.Event()

    def open(self):
        self._thread = threading.Thread(target=self._read, daemon=True)
        self._thread.start()

    def _read(self):
        reason = "server closed stream"
        try:
            headers = dict(self.headers, Accept="text/event-stream")
            self._response = self.session.get(
                self.url,
                headers=headers,
                stream=True,
                timeout=(self.connect_timeout, None)
            )
            self._response.raise_for_status()
            if self._closed.is_set():
                return
            self.on_open()

            for payload in iter_sse_data(self._response.iter_lines(decode_unicode=True)):
                if self._closed.is_set():
                    return
                try:
                    frame = json.loads(payload)
                except ValueError:
                    logger.error(f"Discarding malformed frame: {payload[:200]}")
                    continue
                self.on_message(frame)
        except requests.RequestException as e:
            reason = str(e)
            if not self._closed.is_set():
                logger.warning(f"Stream {self.url} failed: {e}")
        finally:
            if self._response is not None:
                self._response.close()
            if not self._closed.is_set():
                self.on_close(reason)

    def send(self, frame: dict):
        response = self.session.post(self.messages_url, json=frame, headers=self.headers, timeout=5)
        response.raise_for_status()

    def close(self):
        self._closed.set()
        if self._response is not None:
            self._response.close()
