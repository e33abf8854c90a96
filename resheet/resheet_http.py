"""
Sheet documents and cell data over HTTP.

A sheet can be loaded from and published to a URL; cells reach remote
JSON/YAML data through `fetch_value` and `post_value`. Every request goes
through `request`, which retries transport failures and 5xx answers.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple
from urllib.parse import urlparse

import httpx

from resheet.resheet_config import RuntimeConfig
from resheet.resheet_serialize import deserialize, detect_format, format_for_path, serialize

log = logging.getLogger(__name__)

MEDIA_TYPES = {
    'json': 'application/json; charset=utf-8',
    'yaml': 'application/yaml; charset=utf-8',
}


class RemoteError(RuntimeError):
    """The server answered with a non-2xx status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class HttpOptions:
    timeout: float = 5.0
    retries: int = 2
    backoff: float = 0.2
    headers: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: RuntimeConfig,
                    headers: Optional[Mapping[str, str]] = None) -> 'HttpOptions':
        return cls(timeout=config.http_timeout, retries=config.http_retries,
                   headers=dict(headers or {}))


def _retryable(error: Exception) -> bool:
    if isinstance(error, RemoteError):
        return error.status is None or error.status >= 500
    return isinstance(error, (httpx.TransportError, OSError))


async def request(method: str, url: str, options: HttpOptions = HttpOptions(),
                  content: Optional[str] = None, content_type: Optional[str] = None) -> httpx.Response:
    """Sends one request, retrying with exponential backoff; returns a 2xx response."""
    headers = dict(options.headers)
    body = None
    if content is not None:
        body = content.encode('utf-8')
        headers.setdefault('Content-Type', content_type or 'text/plain; charset=utf-8')

    retries = max(0, options.retries)
    async with httpx.AsyncClient(timeout=options.timeout, follow_redirects=True) as client:
        for attempt in range(retries + 1):
            try:
                resp = await client.request(method.upper(), url, headers=headers, content=body)
                if not 200 <= resp.status_code < 300:
                    preview = (resp.text or "")[:200]
                    raise RemoteError(f"HTTP {resp.status_code} for {url}: {preview}", resp.status_code)
                return resp
            except Exception as e:
                if attempt >= retries or not _retryable(e):
                    raise
                log.info("%s %s failed (%r), retrying", method.upper(), url, e)
                await asyncio.sleep(options.backoff * (2 ** attempt))


def format_for_url(url: str) -> Optional[str]:
    return format_for_path(urlparse(url).path)


# ===================================================================
# Sheet documents
# ===================================================================

async def fetch_document(url: str, options: HttpOptions = HttpOptions()) -> Tuple[str, Optional[str]]:
    """Downloads a sheet document; returns its text and its format if one can be told.

    The format comes from the Content-Type, then the URL's extension, then
    the text itself.
    """
    resp = await request('GET', url, options)
    text = resp.text
    fmt = (detect_format(resp.headers.get('Content-Type'))
           or format_for_url(url)
           or detect_format(data_hint=text))
    log.info("Fetched %d bytes from %s (%s)", len(resp.content), url, fmt or 'unknown format')
    return text, fmt


async def publish_document(url: str, text: str, fmt: str, options: HttpOptions = HttpOptions()) -> int:
    """Uploads a sheet document with PUT; returns the response status."""
    resp = await request('PUT', url, options, content=text, content_type=MEDIA_TYPES.get(fmt))
    return resp.status_code


# ===================================================================
# Cell data
# ===================================================================

def _decode(resp: httpx.Response) -> Any:
    return deserialize(resp.content, content_type=resp.headers.get('Content-Type'))


async def fetch_value(url: str, options: HttpOptions = HttpOptions()) -> Any:
    """GETs `url`; JSON and YAML bodies are decoded, anything else is text."""
    return _decode(await request('GET', url, options))


async def post_value(url: str, value: Any, options: HttpOptions = HttpOptions()) -> Any:
    """POSTs `value`: strings as text, anything else as JSON. Returns the decoded answer."""
    if isinstance(value, str):
        resp = await request('POST', url, options, content=value)
    else:
        resp = await request('POST', url, options, content=serialize(value, fmt='json', pretty=False),
                             content_type=MEDIA_TYPES['json'])
    return _decode(resp)
