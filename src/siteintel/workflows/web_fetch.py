from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urljoin

import aiohttp

from ..core.keys import METHOD_BROWSER, METHOD_HTTP
from .intel_config import (
    DEFAULT_ACCEPT,
    DEFAULT_ACCEPT_LANGUAGE,
    DEFAULT_REQUEST_TIMEOUT_MS,
    DEFAULT_USER_AGENT,
    MAX_BODY_BYTES,
    MAX_REDIRECT_FOLLOWS,
    READ_CHUNK_BYTES,
)

logger = logging.getLogger(__name__)


@dataclass
class FetchConfig:
    """Configuration parameters for plain HTTP acquisition."""

    timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    max_redirects: int = MAX_REDIRECT_FOLLOWS
    max_body_bytes: int = MAX_BODY_BYTES
    user_agent: str = DEFAULT_USER_AGENT
    accept: str = DEFAULT_ACCEPT
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE
    connection_limit: int = 24
    verify_ssl: bool = True


@dataclass
class FetchResult:
    """Outcome of one logical fetch, shared by the HTTP and browser paths.

    ``fetch_method`` is the discriminant (``http`` or ``browser``). A ``None``
    ``content`` means the fetch produced nothing usable; ``error_message`` says
    why when known.
    """

    url: str
    fetch_method: str = METHOD_HTTP
    status_code: Optional[int] = None
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    content: Optional[str] = None
    fetch_duration_ms: int = 0
    error_message: Optional[str] = None
    robots_allowed: bool = True
    final_url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @property
    def is_browser(self) -> bool:
        return self.fetch_method == METHOD_BROWSER

    def to_dict(self, *, include_content: bool = False) -> Dict[str, Any]:
        payload = asdict(self)
        if not include_content:
            payload.pop("content", None)
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _decode(raw: bytes, charset: Optional[str]) -> str:
    try:
        return raw.decode(charset or "utf-8", "ignore")
    except LookupError:
        return raw.decode("utf-8", "ignore")


class HttpFetcher:
    """Async HTTP client with manual redirect following and a capped body reader.

    Redirects are followed by hand so the hop count is bounded by
    ``FetchConfig.max_redirects``. Bodies are only read for 2xx responses; when
    ``Content-Length`` advertises more than ``max_body_bytes`` the body is
    streamed in chunks and cut at the cap instead of being read whole.

    Use as ``async with HttpFetcher(config) as http:`` or pass an existing
    ``aiohttp.ClientSession`` (the caller then owns it).
    """

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config or FetchConfig()
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "HttpFetcher":
        self._ensure_session()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        return self._ensure_session()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {
                "User-Agent": self.config.user_agent,
                "Accept": self.config.accept,
                "Accept-Language": self.config.accept_language,
            }
            connector = aiohttp.TCPConnector(limit=self.config.connection_limit)
            self._session = aiohttp.ClientSession(connector=connector, headers=headers)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    async def fetch(
        self,
        url: str,
        *,
        timeout_ms: Optional[int] = None,
        follow_redirects: bool = True,
    ) -> FetchResult:
        """GET ``url`` and return a :class:`FetchResult`; transport errors never raise."""

        started = time.monotonic()
        session = self._ensure_session()
        budget_ms = timeout_ms or self.config.timeout_ms
        timeout = aiohttp.ClientTimeout(total=budget_ms / 1000)
        ssl_param = None if self.config.verify_ssl else False
        max_hops = self.config.max_redirects if follow_redirects else 0
        result = FetchResult(url=url, final_url=url)
        current = url

        try:
            for hop in range(max_hops + 1):
                async with session.get(
                    current,
                    allow_redirects=False,
                    timeout=timeout,
                    ssl=ssl_param,
                ) as resp:
                    result.status_code = resp.status
                    result.headers = {k.lower(): v for k, v in resp.headers.items()}
                    result.content_type = resp.headers.get("Content-Type")
                    location = resp.headers.get("Location")
                    if follow_redirects and 300 <= resp.status < 400 and location:
                        if hop == max_hops:
                            result.error_message = f"Redirect limit exceeded ({max_hops})"
                            logger.info("redirect cap hit for %s after %d hops", url, max_hops)
                            break
                        current = urljoin(current, location)
                        continue
                    if 200 <= resp.status < 300:
                        raw, truncated = await self._read_body(resp)
                        result.content = _decode(raw, resp.charset)
                        result.truncated = truncated
                        result.content_length = (
                            resp.content_length if resp.content_length is not None else len(raw)
                        )
                    else:
                        result.content_length = resp.content_length
                    break
        except asyncio.TimeoutError:
            result.error_message = "Request timeout"
        except aiohttp.ClientError as exc:
            result.error_message = str(exc) or exc.__class__.__name__
        except ValueError as exc:
            result.error_message = f"Invalid URL: {exc}"

        result.final_url = current
        result.fetch_duration_ms = _elapsed_ms(started)
        return result

    async def _read_body(self, resp: aiohttp.ClientResponse) -> Tuple[bytes, bool]:
        cap = self.config.max_body_bytes
        declared = resp.content_length
        if declared is None or declared <= cap:
            return await resp.read(), False
        chunks = []
        total = 0
        async for chunk in resp.content.iter_chunked(READ_CHUNK_BYTES):
            piece = chunk[: cap - total]
            chunks.append(piece)
            total += len(piece)
            if total >= cap:
                break
        logger.debug("body of %s capped at %d of %d bytes", resp.url, total, declared)
        return b"".join(chunks), True


__all__ = ["FetchConfig", "FetchResult", "HttpFetcher"]
