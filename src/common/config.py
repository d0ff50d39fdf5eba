from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterable, Optional


log = logging.getLogger(__name__)


# Datastore connection strings, first one set wins
ENV_POSTGRES_URLS = ("POSTGRES_URL", "POSTGRES_PRISMA_URL", "POSTGRES_URL_NON_POOLING")

ENV_KV_URL = "KV_REST_API_URL"
ENV_KV_TOKEN = "KV_REST_API_TOKEN"
ENV_EDGE_CONFIG = "EDGE_CONFIG"

ENV_AVATAR_BUCKET = "AVATAR_BUCKET"
ENV_AVATAR_PUBLIC_BASE_URL = "AVATAR_PUBLIC_BASE_URL"
ENV_AWS_REGION = "AWS_REGION"

ENV_WP_BASE_URL = "WORDPRESS_BASE_URL"
ENV_WP_USER = "WORDPRESS_APP_USER"
ENV_WP_PASSWORD = "WORDPRESS_APP_PASSWORD"
ENV_PMPRO_LEVEL_ID = "PMPRO_LEVEL_ID"

ENV_FERNET_KEY = "STATE_FERNET_KEY"

# Optional SSM Parameter Store prefix for secrets (e.g. "/recovery-buddy/prod/")
ENV_PARAM_PREFIX = "PARAM_PREFIX"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    import boto3
    from botocore.exceptions import ClientError

    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                log.warning("SSM parameter %s unavailable (%s)", full, code)
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


def get_secret(env_name: str, ssm_name: str) -> Optional[str]:
    """Resolve a secret from the environment, else from SSM under PARAM_PREFIX.

    Environment values take precedence. SSM is consulted only when
    PARAM_PREFIX is set; lookup failures other than a missing parameter
    propagate to the caller.
    """
    val = _getenv(env_name)
    if val is not None:
        return val
    prefix = _getenv(ENV_PARAM_PREFIX)
    if not prefix:
        return None
    return _load_ssm_params(prefix, [ssm_name]).get(ssm_name)


def postgres_url() -> Optional[str]:
    for name in ENV_POSTGRES_URLS:
        val = _getenv(name)
        if val:
            return val
    return None


@dataclass(frozen=True)
class KvSettings:
    url: str
    token: str


def kv_settings() -> Optional[KvSettings]:
    """Key-value cache settings, or None when the cache is not configured."""
    url = _getenv(ENV_KV_URL)
    if not url:
        return None
    token = get_secret(ENV_KV_TOKEN, "kv_rest_api_token")
    if not token:
        return None
    return KvSettings(url=url, token=token)


def edge_config_url() -> Optional[str]:
    return _getenv(ENV_EDGE_CONFIG)


def fernet_key() -> Optional[str]:
    return get_secret(ENV_FERNET_KEY, "fernet_key")


@dataclass(frozen=True)
class AvatarSettings:
    bucket: str
    public_base_url: Optional[str]
    region_name: Optional[str]


def avatar_settings() -> Optional[AvatarSettings]:
    bucket = _getenv(ENV_AVATAR_BUCKET)
    if not bucket:
        return None
    return AvatarSettings(
        bucket=bucket,
        public_base_url=_getenv(ENV_AVATAR_PUBLIC_BASE_URL),
        region_name=_getenv(ENV_AWS_REGION),
    )


@dataclass(frozen=True)
class WordPressSettings:
    base_url: str
    app_user: str
    app_password: str
    level_id: str


def wordpress_settings() -> Optional[WordPressSettings]:
    """CMS credentials, or None when any of base URL, user or password is missing."""
    base_url = _getenv(ENV_WP_BASE_URL)
    user = _getenv(ENV_WP_USER)
    if not base_url or not user:
        return None
    password = get_secret(ENV_WP_PASSWORD, "wordpress_app_password")
    if not password:
        return None
    return WordPressSettings(
        base_url=base_url,
        app_user=user,
        app_password=password,
        level_id=_getenv(ENV_PMPRO_LEVEL_ID, "1") or "1",
    )
