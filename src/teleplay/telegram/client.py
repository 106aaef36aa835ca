from __future__ import annotations

import re
from typing import Any, Protocol

import httpx
import msgspec

from ..errors import FatalError, RetryAfter, TransientError
from ..logging import get_logger
from ..model import Update
from . import api_models

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.telegram.org"
# Added on top of the long-poll timeout so the HTTP read never fires first.
_HTTP_TIMEOUT_SLACK_S = 15.0
_CREDENTIAL_STATUS = frozenset({401, 403, 404})

_RETRY_AFTER_RE = re.compile(r"retry after (\d+)", re.IGNORECASE)


class MessageSource(Protocol):
    async def fetch_updates(
        self, offset: int | None, limit: int, timeout_s: int
    ) -> list[Update]: ...

    async def send_reply(self, chat_id: int, text: str) -> None: ...

    async def close(self) -> None: ...


def _retry_after_from_payload(payload: dict[str, Any]) -> float | None:
    params = payload.get("parameters")
    if isinstance(params, dict):
        retry_after = params.get("retry_after")
        if isinstance(retry_after, (int, float)):
            return float(retry_after)
    description = payload.get("description")
    if isinstance(description, str):
        return _retry_after_from_description(description)
    return None


def _retry_after_from_description(description: str) -> float | None:
    match = _RETRY_AFTER_RE.search(description)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


def _to_update(raw: dict[str, Any], decoded: api_models.Update) -> Update:
    message = decoded.message
    if message is None:
        return Update(update_id=decoded.update_id, raw=raw)
    return Update(
        update_id=decoded.update_id,
        chat_id=message.chat.id,
        text=message.text,
        message_id=message.message_id,
        raw=raw,
    )


def parse_updates(result: Any) -> list[Update]:
    """Decode a ``getUpdates`` result list, keeping the raw update dicts."""
    if not isinstance(result, list):
        raise TransientError(
            f"getUpdates returned {type(result).__name__}, expected list"
        )
    try:
        decoded = msgspec.convert(result, type=list[api_models.Update])
    except msgspec.ValidationError as exc:
        raise TransientError(f"malformed getUpdates payload: {exc}") from exc
    return [_to_update(raw, item) for raw, item in zip(result, decoded, strict=True)]


class TelegramClient:
    def __init__(
        self,
        token: str,
        timeout_s: float = 120,
        client: httpx.AsyncClient | None = None,
        base_url: str = DEFAULT_BASE_URL,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._base = f"{base_url.rstrip('/')}/bot{token}"
        self._timeout_s = timeout_s
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(
        self,
        method: str,
        json_data: dict[str, Any],
        *,
        fatal_on_credentials: bool = False,
        timeout_s: float | None = None,
    ) -> Any:
        logger.debug("telegram.request", method=method, payload=json_data)
        try:
            resp = await self._client.post(
                f"{self._base}/{method}",
                json=json_data,
                timeout=timeout_s if timeout_s is not None else self._timeout_s,
            )
        except httpx.HTTPError as e:
            logger.error(
                "telegram.network_error",
                method=method,
                error=str(e),
                error_type=e.__class__.__name__,
            )
            raise TransientError(f"{method}: {e.__class__.__name__}: {e}") from e

        payload = _json_or_none(resp)

        if resp.is_error:
            if resp.status_code == 429:
                retry_after = (
                    _retry_after_from_payload(payload)
                    if isinstance(payload, dict)
                    else _retry_after_from_description(resp.text)
                )
                if retry_after is not None:
                    logger.info(
                        "telegram.rate_limited",
                        method=method,
                        status=resp.status_code,
                        retry_after=retry_after,
                    )
                    raise RetryAfter(retry_after)
            logger.error(
                "telegram.http_error",
                method=method,
                status=resp.status_code,
                body=resp.text,
            )
            message = f"{method}: HTTP {resp.status_code}"
            if fatal_on_credentials and resp.status_code in _CREDENTIAL_STATUS:
                raise FatalError(f"{message} (bot token rejected)")
            raise TransientError(message)

        if payload is None:
            logger.error(
                "telegram.bad_response",
                method=method,
                status=resp.status_code,
                body=resp.text,
            )
            raise TransientError(f"{method}: response is not JSON")

        if not isinstance(payload, dict):
            logger.error("telegram.invalid_payload", method=method, payload=payload)
            raise TransientError(f"{method}: payload is not an object")

        if not payload.get("ok"):
            retry_after = _retry_after_from_payload(payload)
            if retry_after is not None:
                logger.info(
                    "telegram.rate_limited", method=method, retry_after=retry_after
                )
                raise RetryAfter(retry_after)
            logger.error("telegram.api_error", method=method, payload=payload)
            description = payload.get("description") or "ok=false"
            error_code = payload.get("error_code")
            if fatal_on_credentials and error_code in _CREDENTIAL_STATUS:
                raise FatalError(f"{method}: {description}")
            raise TransientError(f"{method}: {description}")

        logger.debug("telegram.response", method=method, payload=payload)
        return payload.get("result")

    async def fetch_updates(
        self, offset: int | None, limit: int, timeout_s: int
    ) -> list[Update]:
        params: dict[str, Any] = {
            "limit": limit,
            "timeout": timeout_s,
            "allowed_updates": ["message"],
        }
        if offset is not None:
            params["offset"] = offset
        result = await self._post(
            "getUpdates",
            params,
            fatal_on_credentials=True,
            timeout_s=max(self._timeout_s, timeout_s + _HTTP_TIMEOUT_SLACK_S),
        )
        return parse_updates(result)

    async def send_reply(self, chat_id: int, text: str) -> None:
        await self._post("sendMessage", {"chat_id": chat_id, "text": text})

