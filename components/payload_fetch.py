# components/payload_fetch.py
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Iterable, List, Literal, Optional, Sequence

import httpx
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from batcher.utils import (
    NonRetryableHTTPError,
    TransientHTTPError,
    http_status_to_exc,
    init_logging,
    retry_async,
)

logger = logging.getLogger("payload_fetch")

API_BASE = "https://api.github.com"
RAW_BASE = "https://raw.githubusercontent.com"


# ---------- Listing schema ----------
class RepoEntry(BaseModel):
    """One entry of the GitHub contents API listing (only the fields we use)."""
    type: Literal["file", "dir", "symlink", "submodule"]
    path: str = Field(..., min_length=1)
    name: str = ""


_LISTING = TypeAdapter(List[RepoEntry])


class PayloadSource(BaseModel):
    owner: str = Field(..., min_length=1)
    repository: str = Field(..., min_length=1)
    ref: str = "main"
    path: str = "bb"
    extensions: Sequence[str] = (".js",)

    def listing_url(self, folder: str) -> str:
        return f"{API_BASE}/repos/{self.owner}/{self.repository}/contents/{folder}"

    def raw_url(self, path: str) -> str:
        return f"{RAW_BASE}/{self.owner}/{self.repository}/{self.ref}/{path}"


def read_token(path: Optional[Path]) -> Optional[str]:
    if path is None or not path.exists():
        return None
    token = path.read_text(encoding="utf-8").strip()
    return token or None


def build_client(token: Optional[str] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 20.0) -> httpx.AsyncClient:
    headers = {"Accept": "application/vnd.github+json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport, follow_redirects=True)


@retry_async(max_attempts=3, initial_delay_ms=250, max_delay_ms=2000, jitter_ms=100)
async def _get(client: httpx.AsyncClient, url: str, **kwargs) -> httpx.Response:
    try:
        resp = await client.get(url, **kwargs)
    except httpx.TransportError as e:
        raise TransientHTTPError(f"{type(e).__name__}: {e}") from e
    exc = http_status_to_exc(resp.status_code)
    if exc is not None:
        raise exc
    return resp


async def repository_listing(client: httpx.AsyncClient, src: PayloadSource, folder: str = "") -> List[str]:
    """Every file under `folder` (recursively) whose name ends with one of src.extensions."""
    resp = await _get(client, src.listing_url(folder), params={"ref": src.ref})
    try:
        entries = _LISTING.validate_python(resp.json())
    except (ValidationError, ValueError) as e:
        raise NonRetryableHTTPError(f"unexpected listing for {folder!r}: {e}") from e

    files = [
        e.path for e in entries
        if e.type == "file" and any(e.path.endswith(ext) for ext in src.extensions)
    ]
    for sub in (e.path for e in entries if e.type == "dir"):
        files.extend(await repository_listing(client, src, sub))
    return files


async def download(client: httpx.AsyncClient, src: PayloadSource, path: str, dest_root: Path) -> Optional[Path]:
    try:
        resp = await _get(client, src.raw_url(path))
    except (TransientHTTPError, NonRetryableHTTPError) as e:
        logger.error("Failed to download %s: %s", path, e)
        return None
    out = dest_root / path
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(resp.content)
    return out


async def pull(
    src: PayloadSource,
    dest_root: Path,
    *,
    files: Iterable[str] = (),
    client: Optional[httpx.AsyncClient] = None,
    token: Optional[str] = None,
) -> List[Path]:
    """
    Download payload files into dest_root, keeping repository paths. With no explicit
    `files` the repository folder `src.path` is listed. Individual failures are logged
    and skipped.
    """
    own_client = client is None
    client = client or build_client(token)
    try:
        wanted = list(files) or await repository_listing(client, src, src.path)
        results = await asyncio.gather(*(download(client, src, p, dest_root) for p in wanted))
    finally:
        if own_client:
            await client.aclose()
    done = [p for p in results if p is not None]
    logger.info("Pull complete: %d/%d file(s) into %s", len(done), len(wanted), dest_root)
    return done


# ----------------------------
# CLI
# ----------------------------

def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Download worker payload files from a GitHub repository.")
    p.add_argument("ref", nargs="?", default=None, help="Git ref (overrides --ref).")
    p.add_argument("--github", dest="owner", required=True, help="Repository owner.")
    p.add_argument("--repository", required=True)
    p.add_argument("--ref", dest="ref_opt", default="main")
    p.add_argument("--path", default="bb")
    p.add_argument("--file", dest="files", action="append", default=[])
    p.add_argument("--extension", dest="extensions", action="append", default=None)
    p.add_argument("--dest", type=Path, default=Path("payloads"))
    p.add_argument("--token-file", type=Path, default=Path("api_token.txt"))
    p.add_argument("--log-file", type=Path, default=Path("logs/payload_fetch.log"))
    return p.parse_args(list(argv) if argv is not None else None)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _parse_args(argv)
    init_logging(args.log_file)
    src = PayloadSource(
        owner=args.owner,
        repository=args.repository,
        ref=args.ref or args.ref_opt,
        path=args.path,
        extensions=tuple(args.extensions or (".js",)),
    )
    asyncio.run(pull(src, args.dest, files=args.files, token=read_token(args.token_file)))


if __name__ == "__main__":
    main()
