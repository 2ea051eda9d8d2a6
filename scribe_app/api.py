"""HTTP client for the session and chunk storage API."""

import logging
from datetime import datetime

import httpx

from scribe_app._types import Chunk, SessionState
from scribe_app.errors import StorageError

logger = logging.getLogger(__name__)


class StorageClient:
    """Thin async wrapper over the storage REST endpoints.

    Every non-2xx response and every transport failure is raised as
    StorageError so callers handle a single exception type.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._client_owned = client is None

    async def __aenter__(self) -> "StorageClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.aclose()
        return False

    async def list_chunks(self, session_id: str) -> list[dict]:
        response = await self._request("GET", f"/sessions/{session_id}/chunks")
        try:
            data = response.json()
        except ValueError as e:
            raise StorageError(f"Invalid chunk list payload: {e}") from e
        if not isinstance(data, list):
            raise StorageError(f"Unexpected chunk list payload: {type(data).__name__}")
        return data

    async def save_chunk(self, session_id: str, chunk: Chunk) -> dict:
        response = await self._request(
            "POST", f"/sessions/{session_id}/chunks", json=chunk.to_payload()
        )
        return _json_body(response)

    async def update_session(
        self,
        session_id: str,
        state: SessionState,
        duration_sec: int,
        stopped_at: datetime,
    ) -> dict:
        response = await self._request(
            "PUT",
            f"/sessions/{session_id}",
            json={
                "state": state.value,
                "durationSec": duration_sec,
                "stoppedAt": stopped_at.isoformat(),
            },
        )
        return _json_body(response)

    async def fetch_transcript(self, session_id: str) -> str:
        """Join persisted chunk texts in sequence order."""
        chunks = sorted(_sequenced(await self.list_chunks(session_id)), key=lambda c: c["seq"])
        return "\n".join(_chunk_text(c) for c in chunks)

    async def aclose(self) -> None:
        if self._client_owned:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise StorageError(f"{method} {url} failed: {e}") from e

        if not response.is_success:
            raise StorageError(
                f"{method} {url} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response


def _json_body(response: httpx.Response) -> dict:
    """Decoded body of a successful write, or {} when it is empty or not JSON.

    A 2xx status alone means the write is durable.
    """
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        logger.debug("Ignoring non-JSON %d response body", response.status_code)
        return {}
    return data if isinstance(data, dict) else {}


def _sequenced(chunks: list) -> list[dict]:
    """Chunk records that carry an integer seq."""
    return [
        c
        for c in chunks
        if isinstance(c, dict) and isinstance(c.get("seq"), int) and not isinstance(c["seq"], bool)
    ]


def _chunk_text(chunk: dict) -> str:
    meta = chunk.get("meta") or {}
    return meta.get("transcriptText") or chunk.get("text") or ""


async def get_next_chunk_sequence(storage: StorageClient, session_id: str) -> int:
    """Next free chunk sequence number for a session.

    Returns max(existing seq) + 1, or 0 when there are no chunks. Falls back
    to 0 on any lookup failure so recording can still start.
    """
    try:
        chunks = await storage.list_chunks(session_id)
    except StorageError as e:
        logger.warning("Could not read existing chunks for %s, starting at seq 0: %s", session_id, e)
        return 0

    seqs = [c["seq"] for c in _sequenced(chunks)]
    if not seqs:
        logger.info("No existing chunks for %s, starting at seq 0", session_id)
        return 0

    next_seq = max(seqs) + 1
    logger.info("Found %d existing chunks for %s, starting at seq %d", len(seqs), session_id, next_seq)
    return next_seq
