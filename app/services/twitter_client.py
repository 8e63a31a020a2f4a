"""X/Twitter API v2 client for posting with OAuth 1.0a user-context credentials.

Errors are classified so the publisher can decide per post:

- 201: the new tweet id is returned
- 401: the stored credentials were revoked (MissingCredentials)
- 429, 5xx, network failures: TransientPublishError
- any other 4xx: the platform refused this post's content (ContentRejected)
"""
import json

import httpx
import structlog
from oauthlib import oauth1

from app.core.config import settings
from app.core.errors import ContentRejected, MissingCredentials, TransientPublishError

log = structlog.get_logger()


def post_url(username: str, tweet_id: str) -> str:
    return settings.POST_URL_TEMPLATE.format(username=username, tweet_id=tweet_id)


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        if payload.get("detail"):
            return str(payload["detail"])
        errors = payload.get("errors") or []
        if errors and isinstance(errors[0], dict):
            return str(errors[0].get("message") or errors[0].get("detail") or errors[0])
        if payload.get("title"):
            return str(payload["title"])
    return f"HTTP {response.status_code}"


class TwitterClient:
    """Posts tweets on behalf of one connected account."""

    def __init__(
        self,
        access_token: str,
        access_secret: str,
        username: str = "",
        consumer_key: str | None = None,
        consumer_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.username = username
        self.base_url = (base_url or settings.TWITTER_API_BASE).rstrip("/")
        self.timeout = timeout or settings.TWITTER_HTTP_TIMEOUT
        self._transport = transport
        self._oauth = oauth1.Client(
            consumer_key if consumer_key is not None else settings.TWITTER_CONSUMER_KEY,
            client_secret=consumer_secret if consumer_secret is not None else settings.TWITTER_CONSUMER_SECRET,
            resource_owner_key=access_token,
            resource_owner_secret=access_secret,
        )

    @classmethod
    def for_account(cls, account) -> "TwitterClient":
        return cls(account.access_token, account.access_secret, username=account.username)

    def _signed_headers(self, url: str) -> dict[str, str]:
        # JSON bodies are not part of the OAuth 1.0a signature base string.
        _, headers, _ = self._oauth.sign(url, http_method="POST", body=None, headers={"Content-Type": "application/json"})
        return headers

    async def post_tweet(
        self,
        text: str,
        reply_to: str | None = None,
        media_ids: list[str] | None = None,
    ) -> str:
        """Create a tweet and return its id."""
        url = f"{self.base_url}/tweets"
        payload: dict = {"text": text}
        if reply_to:
            payload["reply"] = {"in_reply_to_tweet_id": reply_to}
        if media_ids:
            payload["media"] = {"media_ids": media_ids}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, content=json.dumps(payload), headers=self._signed_headers(url))
        except httpx.HTTPError as exc:
            log.warning("twitter_request_failed", error=str(exc))
            raise TransientPublishError(f"Could not reach X: {exc}") from exc

        if response.status_code in (200, 201):
            try:
                return str(response.json()["data"]["id"])
            except (ValueError, KeyError, TypeError) as exc:
                raise TransientPublishError("X returned an unreadable response") from exc

        detail = _error_detail(response)
        if response.status_code == 401:
            raise MissingCredentials(f"X rejected the account credentials: {detail}")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientPublishError(f"X is unavailable (HTTP {response.status_code}): {detail}")
        raise ContentRejected(detail, platform_status=response.status_code)
