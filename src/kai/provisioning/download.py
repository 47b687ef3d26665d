"""Streaming file download with redirect following and progress messages."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import httpx

from kai.errors import RuntimeOperationFailedError
from kai.infrastructure.logger import logger

OnProgress = Callable[[str], None]

_CHUNK_SIZE = 1024 * 256


async def download_file(
    url: str,
    dest: Path,
    on_progress: OnProgress | None = None,
    label: str = "Downloading",
    client: httpx.AsyncClient | None = None,
) -> None:
    """Download url to dest, following any chain of redirects.

    Progress is reported as a percentage of Content-Length, once per whole
    percent. A partial file is removed when the download fails.
    """
    owns_client = client is None
    http = client or httpx.AsyncClient(follow_redirects=True, timeout=httpx.Timeout(30.0, read=300.0))
    dest.parent.mkdir(parents=True, exist_ok=True)

    logger.info("Downloading file", url=url, dest=str(dest))
    try:
        async with http.stream("GET", url, follow_redirects=True) as response:
            response.raise_for_status()
            total = int(response.headers.get("content-length") or 0)
            received = 0
            last_percent = -1

            with dest.open("wb") as fh:
                async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                    fh.write(chunk)
                    received += len(chunk)
                    if total > 0 and on_progress:
                        percent = received * 100 // total
                        if percent != last_percent:
                            last_percent = percent
                            on_progress(
                                f"{label}: {percent}% "
                                f"({received / 1024 / 1024:.1f}MB / {total / 1024 / 1024:.1f}MB)"
                            )
    except httpx.HTTPError as err:
        dest.unlink(missing_ok=True)
        logger.error("Download failed", url=url, error=str(err))
        raise RuntimeOperationFailedError(f"Download of {url} failed: {err}") from err
    finally:
        if owns_client:
            await http.aclose()

    logger.info("Download complete", url=url, bytes=received)
