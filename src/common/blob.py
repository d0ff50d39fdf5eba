from __future__ import annotations

import base64
import binascii
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError


_DATA_URL_META_RE = re.compile(r"^data:(.*);base64$")


class BlobStoreError(RuntimeError):
    """Raised when an object could not be written to blob storage."""


@dataclass(frozen=True)
class DecodedImage:
    mime: str
    ext: str
    data: bytes


def decode_image_data_url(data_url: str) -> DecodedImage:
    """Decode a `data:image/<type>;base64,<payload>` URL.

    The MIME type defaults to image/png when the header does not name one.
    Raises ValueError when the string is not an image data URL or the payload
    is not valid base64.
    """
    if not isinstance(data_url, str) or not data_url.startswith("data:image"):
        raise ValueError("not an image data URL")
    meta, sep, payload = data_url.partition(",")
    if not sep:
        raise ValueError("data URL has no payload")
    m = _DATA_URL_META_RE.match(meta)
    mime = (m.group(1) if m else "") or "image/png"
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as ex:
        raise ValueError("data URL payload is not valid base64") from ex
    ext = mime.split("/", 1)[1] if "/" in mime else ""
    return DecodedImage(mime=mime, ext=ext or "png", data=data)


class S3AvatarStore:
    """
    Public avatar storage in an S3 bucket.

    Objects are written under `avatars/<epoch-millis>.<ext>` and addressed by
    their public URL: `public_base_url/<key>` when configured (e.g. a CDN in
    front of the bucket), otherwise the virtual-hosted S3 URL.
    """

    def __init__(
        self,
        *,
        bucket: str,
        s3: Optional[object] = None,
        public_base_url: Optional[str] = None,
        region_name: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._region = region_name
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._clock = clock

    def public_url(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        if self._region and self._region != "us-east-1":
            return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"
        return f"https://{self._bucket}.s3.amazonaws.com/{key}"

    def put_avatar(self, image: DecodedImage) -> str:
        """Upload an avatar image; returns its public URL."""
        key = f"avatars/{int(self._clock() * 1000)}.{image.ext}"
        try:
            self._s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=image.data,
                ContentType=image.mime,
            )
        except (ClientError, BotoCoreError) as ex:
            raise BlobStoreError(f"Failed to upload s3://{self._bucket}/{key}") from ex
        return self.public_url(key)


__all__ = [
    "BlobStoreError",
    "DecodedImage",
    "S3AvatarStore",
    "decode_image_data_url",
]
