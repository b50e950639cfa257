"""Downstream sinks for presence events.

Every sink takes an ordered batch and either delivers it or raises
SinkError. Delivery is at-least-once: consumers that need deduplication
should key on (identifier, kind, timestamp).
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence
from urllib.parse import quote

import httpx

from .errors import SinkError
from .models import Event

logger = logging.getLogger(__name__)

DEFAULT_SHEETS_URL = "https://sheets.googleapis.com/v4"


def _make_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout,
        limits=httpx.Limits(
            max_keepalive_connections=5,
            max_connections=10,
            keepalive_expiry=30.0,
        ),
    )


class SinkAdapter(ABC):
    """Something that accepts batches of events."""

    name: str = "sink"

    @abstractmethod
    async def deliver(self, batch: Sequence[Event]) -> None:
        """Push a batch downstream. Raises SinkError on failure."""

    async def close(self) -> None:
        pass


class WebhookSink(SinkAdapter):
    """POSTs each event as its own JSON request.

    Every event in the batch is attempted even after one fails. Failure is
    per event: the SinkError carries only the events that were not
    accepted, and only those are retried.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        name: Optional[str] = None,
    ):
        if not url:
            raise ValueError("Webhook URL is required")
        if name:
            self.name = name
        self.url = url
        self.client = client or _make_client(timeout)

    async def close(self):
        await self.client.aclose()

    async def deliver(self, batch: Sequence[Event]) -> None:
        failed: list[Event] = []
        last_error = ""
        for event in batch:
            try:
                response = await self.client.post(
                    self.url,
                    json=event.to_dict(),
                    headers={"Content-Type": "application/json"},
                )
                if response.status_code >= 300:
                    failed.append(event)
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        "Webhook rejected %s %s: HTTP %s",
                        event.kind.value, event.session_id, response.status_code,
                    )
            except httpx.HTTPError as e:
                failed.append(event)
                last_error = f"{type(e).__name__}: {e}"
                logger.warning("Webhook send for %s failed: %s", event.session_id, last_error)

        if failed:
            raise SinkError(
                self.name,
                f"{len(failed)}/{len(batch)} sends failed (last: {last_error})",
                events=failed,
            )


class AppendLogSink(SinkAdapter):
    """Appends a whole batch as rows of a spreadsheet in one call.

    Uses the Google Sheets ``values:append`` shape. The append either
    lands completely or not at all.
    """

    name = "append_log"

    def __init__(
        self,
        spreadsheet_id: str,
        table: str,
        token: str = "",
        base_url: str = DEFAULT_SHEETS_URL,
        include_name: bool = True,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        name: Optional[str] = None,
    ):
        if not spreadsheet_id or not table:
            raise ValueError("Spreadsheet ID and table name are required")
        if name:
            self.name = name
        self.spreadsheet_id = spreadsheet_id
        self.table = table
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.include_name = include_name
        self.client = client or _make_client(timeout)

    async def close(self):
        await self.client.aclose()

    @property
    def append_url(self) -> str:
        return (
            f"{self.base_url}/spreadsheets/{self.spreadsheet_id}"
            f"/values/{quote(self.table, safe='')}:append"
        )

    def rows(self, batch: Sequence[Event]) -> list[list[str]]:
        rows = []
        for event in batch:
            row = [event.session_id]
            if self.include_name:
                row.append(event.identity.name)
            row.extend([event.kind.value, event.timestamp.isoformat()])
            rows.append(row)
        return rows

    async def deliver(self, batch: Sequence[Event]) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = await self.client.post(
                self.append_url,
                params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
                json={"values": self.rows(batch)},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise SinkError(self.name, f"{type(e).__name__}: {e}", failed=len(batch)) from e

        if response.status_code >= 300:
            raise SinkError(
                self.name,
                f"HTTP {response.status_code}: {response.text[:150]}",
                failed=len(batch),
            )
        logger.debug("Appended %d rows to %s", len(batch), self.table)
