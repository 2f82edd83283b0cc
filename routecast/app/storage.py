import io
import logging
import os
from typing import Optional, Tuple

import httpx
from PIL import Image

logger = logging.getLogger("routecast")

VIDEO_CONTENT_TYPE = "video/mp4"


async def fetch_bytes(
    url: str, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None
) -> bytes:
    async with httpx.AsyncClient(follow_redirects=True, timeout=timeout, transport=transport) as client:
        r = await client.get(url)
        r.raise_for_status()
        return r.content


def decode_texture(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


async def upload_file(
    url: str,
    path: str,
    content_type: str = VIDEO_CONTENT_TYPE,
    timeout: float = 600.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Tuple[bool, str]:
    """PUT the whole file to `url` in one request. Returns (success, message)."""
    if not os.path.isfile(path):
        return False, "no video to upload"
    with open(path, "rb") as f:
        data = f.read()
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            r = await client.put(url, content=data, headers={"Content-Type": content_type})
            r.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Upload of %s to %s failed: %s", path, url, e)
        return False, f"upload failed: {e}"
    logger.info("Uploaded %s (%d bytes) -> %s", path, len(data), r.status_code)
    return True, "upload complete"
