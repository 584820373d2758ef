"""Storage and queue collaborators used by job intake.

Only the interfaces matter to the credit core; the implementations here are
the defaults for a single-host deployment (local upload directory, SQLite
outbox) plus an HTTP queue client for an external worker service.
"""

import logging
import time
from pathlib import Path
from typing import Protocol

import httpx

from photoforge import db
from photoforge.config import Settings

logger = logging.getLogger(__name__)


class QueueError(RuntimeError):
    pass


class Storage(Protocol):
    def upload(self, data: bytes, name: str, mime_type: str) -> str: ...


class Queue(Protocol):
    def enqueue(self, job_id: str, account_id: str, prompt: str, image_refs: list[str]) -> None: ...


class LocalStorage:
    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def upload(self, data: bytes, name: str, mime_type: str) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / Path(name).name
        path.write_bytes(data)
        return str(path)


class SqliteQueue:
    """Outbox table polled by the image worker."""

    def __init__(self, database: db.Database) -> None:
        self.database = database

    def enqueue(self, job_id: str, account_id: str, prompt: str, image_refs: list[str]) -> None:
        payload = {
            "job_id": job_id,
            "account_id": account_id,
            "background_prompt": prompt,
            "input_images": list(image_refs),
        }
        with self.database.transaction() as conn:
            db.enqueue_job(conn, job_id, account_id, payload)


class HttpQueue:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_sec: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_sec = timeout_sec
        self.transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def enqueue(self, job_id: str, account_id: str, prompt: str, image_refs: list[str]) -> None:
        body = {
            "job_id": job_id,
            "account_id": account_id,
            "background_prompt": prompt,
            "input_images": list(image_refs),
        }
        last_err: Exception | None = None
        for attempt in range(3):
            try:
                with httpx.Client(timeout=self.timeout_sec, transport=self.transport) as client:
                    r = client.post(f"{self.base_url}/jobs", headers=self._headers(), json=body)
                    r.raise_for_status()
                    return
            except httpx.TimeoutException as exc:
                # an unanswered enqueue is treated as failed; the caller refunds
                raise QueueError(f"Queue timeout after {self.timeout_sec}s") from exc
            except httpx.HTTPStatusError as exc:
                code = exc.response.status_code
                if code in {429, 500, 502, 503, 504}:
                    last_err = exc
                    logger.warning("Queue returned %s for job %s (attempt %s)", code, job_id, attempt + 1)
                    time.sleep(0.5 * (attempt + 1))
                    continue
                raise QueueError(f"Queue rejected job: HTTP {code}") from exc
            except httpx.HTTPError as exc:
                last_err = exc
                time.sleep(0.5 * (attempt + 1))
        raise QueueError(f"Queue unavailable: {last_err}") from last_err


def build_queue(config: Settings, database: db.Database) -> Queue:
    backend = config.queue_backend.lower().strip()
    if backend == "sqlite":
        return SqliteQueue(database)
    if backend == "http":
        if not config.queue_url:
            raise ValueError("QUEUE_URL is not set")
        return HttpQueue(config.queue_url, api_key=config.queue_api_key, timeout_sec=config.dispatch_timeout_sec)
    raise ValueError(f"Unsupported QUEUE_BACKEND: {backend}")
