"""HTTP artifact fetcher used to download service binaries."""
from __future__ import annotations

import http.client
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from .. import __version__
from ..errors import FetchError

DEFAULT_CHUNK_SIZE = 64 * 1024


class ArtifactFetcher(Protocol):
    """Anything that can stream an artifact from *url*."""

    def fetch(self, url: str) -> Iterator[bytes]:
        """Yield the artifact bytes or raise :class:`FetchError`."""
        ...


@dataclass(slots=True)
class HttpArtifactFetcher:
    """Stream artifacts over HTTP(S) with bounded retries.

    A failure before the first chunk is yielded is retried ``retries`` times
    with a linear backoff. A failure after data has been handed to the caller
    cannot be retried transparently and raises :class:`FetchError` straight
    away so the caller can discard its staging file.
    """

    timeout: float = 60.0
    retries: int = 2
    backoff_seconds: float = 1.0
    chunk_size: int = DEFAULT_CHUNK_SIZE
    opener: Callable[..., Any] = urllib.request.urlopen
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def fetch(self, url: str) -> Iterator[bytes]:
        """Yield the body of *url* in chunks."""
        attempts = self.retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            yielded = False
            try:
                request = urllib.request.Request(
                    url, headers={"User-Agent": f"zelayctl/{__version__}"}
                )
                with self.opener(request, timeout=self.timeout) as response:
                    status = getattr(response, "status", 200)
                    if status is not None and status >= 400:
                        raise FetchError(f"Download of {url} failed with HTTP {status}.")
                    expected = _content_length(response)
                    received = 0
                    while True:
                        chunk = response.read(self.chunk_size)
                        if not chunk:
                            break
                        yielded = True
                        received += len(chunk)
                        yield chunk
                    if expected is not None and received < expected:
                        raise FetchError(
                            f"Download of {url} was interrupted: received {received} of "
                            f"{expected} bytes."
                        )
                return
            except urllib.error.HTTPError as exc:
                last_error = exc
                if 400 <= exc.code < 500:
                    raise FetchError(f"Download of {url} failed with HTTP {exc.code}.") from exc
            except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
                last_error = exc
                if yielded:
                    raise FetchError(f"Download of {url} was interrupted: {exc}") from exc
            if attempt < attempts:
                self.sleep(self.backoff_seconds * attempt)
        raise FetchError(
            f"Download of {url} failed after {attempts} attempt(s): {last_error}"
        ) from last_error


def _content_length(response: Any) -> int | None:
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    value = headers.get("Content-Length")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


__all__ = ["ArtifactFetcher", "DEFAULT_CHUNK_SIZE", "HttpArtifactFetcher"]
