import httpx
import structlog

logger = structlog.get_logger()

_client: httpx.AsyncClient | None = None


def get_http_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": "image-ingest-service/0.1"},
        )
    return _client


async def fetch_image(url: str, timeout: float, max_bytes: int) -> bytes | None:
    """GET ``url`` once and return the raw body, or None if the download failed.

    The status code is not inspected; callers decide what the body is worth.
    """
    client = get_http_client()
    try:
        async with client.stream("GET", url, timeout=timeout) as response:
            content_length = response.headers.get("Content-Length")
            if content_length and content_length.isdigit() and int(content_length) > max_bytes:
                logger.warning("image_fetch_too_large", url=url, content_length=int(content_length))
                return None
            chunks: list[bytes] = []
            total = 0
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if total > max_bytes:
                    logger.warning("image_fetch_too_large", url=url, received=total)
                    return None
                chunks.append(chunk)
            logger.debug("image_fetched", url=url, status=response.status_code, size=total)
            return b"".join(chunks)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.error("image_fetch_failed", url=url, error=str(e))
        return None


async def close_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None
