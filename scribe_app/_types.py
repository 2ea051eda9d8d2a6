"""Shared types and dataclasses for cross-module use."""

from dataclasses import dataclass
from enum import Enum


class SessionState(Enum):
    """Server-side recording session state."""

    RECORDING = "RECORDING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    PROCESSING = "PROCESSING"
    ERROR = "ERROR"


@dataclass
class TranscriptFragment:
    """Incremental transcription result delivered over the transport."""

    text: str
    is_final: bool
    speaker: str | None = None

    @property
    def labelled_text(self) -> str:
        """Text prefixed with the speaker label, if any."""
        if self.speaker:
            return f"[{self.speaker}] {self.text}"
        return self.text

    @classmethod
    def from_payload(cls, payload: dict) -> "TranscriptFragment":
        """Build a fragment from a `transcription` event payload."""
        return cls(
            text=str(payload.get("text", "")),
            is_final=bool(payload.get("isFinal", False)),
            speaker=payload.get("speaker") or None,
        )


@dataclass
class Chunk:
    """Durably persisted slice of final transcript text."""

    seq: int
    text: str
    start_time: str
    end_time: str

    def to_payload(self) -> dict:
        """Request body for `POST /sessions/:id/chunks`."""
        return {
            "seq": self.seq,
            "text": self.text,
            "startTime": self.start_time,
            "endTime": self.end_time,
        }
