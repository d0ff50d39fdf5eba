from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from common import config, http
from common.blob import BlobStoreError, S3AvatarStore, decode_image_data_url


log = logging.getLogger(__name__)


def handle(event: Dict[str, Any], store: Optional[S3AvatarStore] = None) -> Dict[str, Any]:
    if http.method_of(event) != "POST":
        return http.method_not_allowed(["POST"])

    if store is None:
        settings = config.avatar_settings()
        if settings is None:
            return http.error(
                503, f"Blob storage unavailable: {config.ENV_AVATAR_BUCKET} not configured"
            )
        store = S3AvatarStore(
            bucket=settings.bucket,
            public_base_url=settings.public_base_url,
            region_name=settings.region_name,
        )

    try:
        body = http.json_body(event)
    except http.BadRequest:
        return http.error(400, "dataUrl required")
    data_url = body.get("dataUrl") if isinstance(body, dict) else None
    try:
        image = decode_image_data_url(data_url)
    except ValueError:
        return http.error(400, "dataUrl required")

    try:
        url = store.put_avatar(image)
    except BlobStoreError:
        log.error("Blob upload failed", exc_info=True)
        return http.error(500, "Unable to upload avatar")
    return http.response(200, {"url": url})


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for `/api/upload-avatar`.

    Environment:
    - AVATAR_BUCKET: public S3 bucket for avatars (required; absent → 503)
    - AVATAR_PUBLIC_BASE_URL: optional CDN base for the returned URLs
    """
    return handle(event)
