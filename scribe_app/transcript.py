"""Running transcript and save-pending buffer."""

import logging

from scribe_app._types import TranscriptFragment

logger = logging.getLogger(__name__)


class TranscriptAccumulator:
    """Reconciles interim and final fragments in arrival order.

    Interim text only ever replaces the interim display value. Final text is
    appended, newline-separated, to both the display transcript and the
    save-pending buffer. The pending buffer shrinks only through `consume`,
    which the persistence scheduler calls after a successful save.
    """

    def __init__(self):
        self.transcript = ""
        self.interim = ""
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def add(self, fragment: TranscriptFragment) -> None:
        text = fragment.labelled_text
        if fragment.is_final:
            self.transcript += "\n" + text
            self._pending += "\n" + text
            self.interim = ""
            logger.debug("Final fragment buffered (pending length: %d)", len(self._pending))
        else:
            self.interim = text

    def consume(self, submitted: str) -> None:
        """Remove text that has been durably saved.

        `submitted` must be a prefix of the pending buffer as read before the
        save; anything appended since stays pending.
        """
        if not self._pending.startswith(submitted):
            raise ValueError("Submitted text is not a prefix of the pending buffer")
        self._pending = self._pending[len(submitted) :]

    def reset(self) -> None:
        self.transcript = ""
        self.interim = ""
        self._pending = ""
