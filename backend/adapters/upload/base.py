"""
Blob upload contract.

Used to persist captured and played audio. The returned URL is attached
to the owning ChatMessage whenever the upload finishes, which may be
after the message content is complete.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class BlobUploader(ABC):
    """Abstract blob persistence service."""

    @abstractmethod
    async def upload(self, blob: bytes, *, content_type: str = "audio/wav") -> str:
        """
        Store `blob` and return a URL reference to it.

        Raises on failure; callers log and keep the message without a
        reference.
        """
        raise NotImplementedError
