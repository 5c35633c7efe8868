"""
WordPress REST API client and publish gateway.

WordPressClient wraps the handful of WP REST endpoints the pipeline needs:
read a post with its raw (block) content, resolve a slug to a post id, and
write new content back. PublishGateway adds the operator-facing pieces on
top: publish-and-return-link, and a connection probe that never raises.

Authentication is HTTP Basic with a WordPress application password.

Usage:
    from amzpilot.config import load_config
    from amzpilot.wordpress_client import PublishGateway

    gateway = PublishGateway(load_config())
    print(gateway.check_connection_sync())
    link = gateway.publish_sync(123, "<p>new content</p>")
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import aiohttp

from amzpilot.config import PilotConfig
from amzpilot.errors import (
    CMSAuthenticationError,
    CMSError,
    CMSNotFoundError,
    CMSServerError,
    ConfigError,
    ConnectivityError,
)
from amzpilot.task_runner import _run_sync

logger = logging.getLogger("wordpress_client")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_RETRIES = 2
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_STATUS_CODES = {429, 502, 503, 504}
REQUEST_TIMEOUT = 30


@dataclass
class ConnectionResult:
    """Outcome of a connectivity probe."""

    success: bool
    message: str

    def __bool__(self) -> bool:
        return self.success


def connectivity_guidance(site: str, origin: str) -> str:
    return (
        f"Could not reach {site}. If the site sits behind a CORS or firewall "
        f"plugin, allow-list '{origin}' for the WordPress REST API."
    )


# ---------------------------------------------------------------------------
# WordPressClient
# ---------------------------------------------------------------------------


class WordPressClient:
    """
    Async WordPress REST API client for the configured site.

    Parameters
    ----------
    config : PilotConfig
        Site URL and application-password credentials.
    timeout : int
        Request timeout in seconds. Default 30.
    session : aiohttp.ClientSession, optional
        Externally owned session; one is created lazily otherwise.
    """

    def __init__(
        self,
        config: PilotConfig,
        timeout: int = REQUEST_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    # -- Session management -------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": "AmzPilot/1.0", "Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the underlying HTTP session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -- Core HTTP method with retry ----------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        max_retries: int = MAX_RETRIES,
    ) -> Tuple[int, Any]:
        """
        Make an HTTP request, retrying transient 429/5xx and network errors.

        Returns
        -------
        tuple of (status_code, response_json_or_text)

        Raises
        ------
        ConfigError
            If an authenticated call is made without credentials.
        CMSAuthenticationError
            On 401 or 403 responses. Never retried.
        CMSNotFoundError
            On 404 responses.
        CMSServerError
            On any other non-2xx response once retries are exhausted.
        ConnectivityError
            On network failure once retries are exhausted.
        """
        headers: Dict[str, str] = {}
        if authenticated:
            if not self.config.is_configured:
                raise ConfigError("WordPress URL, user and application password must be configured")
            headers["Authorization"] = self.config.auth_header

        kwargs: Dict[str, Any] = {"headers": headers}
        if json_data is not None:
            kwargs["json"] = json_data
        if params is not None:
            kwargs["params"] = {k: v for k, v in params.items() if v is not None}

        session = await self._get_session()

        for attempt in range(max_retries + 1):
            try:
                logger.debug("API %s %s (attempt %d/%d)", method.upper(), url, attempt + 1, max_retries + 1)
                async with session.request(method, url, **kwargs) as resp:
                    status = resp.status
                    try:
                        body = await resp.json(content_type=None)
                    except (json.JSONDecodeError, ValueError):
                        body = await resp.text()

                    if status in (401, 403):
                        raise CMSAuthenticationError(
                            f"Authentication failed for {self.config.site_url}: HTTP {status}",
                            status_code=status,
                            response_body=str(body),
                        )
                    if status == 404:
                        raise CMSNotFoundError(
                            f"Resource not found: {url}", status_code=404, response_body=str(body),
                        )
                    if status in RETRY_STATUS_CODES and attempt < max_retries:
                        delay = RETRY_BASE_DELAY * (2 ** attempt)
                        logger.warning("Retryable error %d from %s, retrying in %.1fs", status, url, delay)
                        await asyncio.sleep(delay)
                        continue
                    if status >= 400:
                        message = body.get("message", str(body)) if isinstance(body, dict) else body
                        raise CMSServerError(
                            f"HTTP {status} from {self.config.site_url}: {message}",
                            status_code=status,
                            response_body=str(body),
                        )
                    return status, body

            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                if attempt < max_retries:
                    delay = RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Network error on %s (%s), retrying in %.1fs: %s",
                        url, type(exc).__name__, delay, exc,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise ConnectivityError(
                    connectivity_guidance(self.config.site_url, self.config.origin) + f" ({exc})",
                    origin=self.config.origin,
                ) from exc

        raise CMSServerError(f"Request to {url} failed after {max_retries} retries")

    # -- Posts --------------------------------------------------------------

    async def get_post(self, post_id: int) -> Dict[str, Any]:
        """
        Retrieve a post in edit context, with its featured media embedded.

        Raises
        ------
        CMSNotFoundError
            If the post does not exist.
        """
        _, body = await self._request(
            "GET",
            f"{self.config.api_url}/posts/{post_id}",
            params={"context": "edit", "_embed": "wp:featuredmedia"},
        )
        if not isinstance(body, dict):
            raise CMSServerError(f"Unexpected response for post {post_id}", response_body=str(body))
        logger.debug("Retrieved post %d", post_id)
        return body

    async def find_post_id_by_slug(self, slug: str) -> Optional[int]:
        """Resolve a post slug to its numeric id, or None when no post matches."""
        if not slug:
            return None
        _, body = await self._request(
            "GET",
            f"{self.config.api_url}/posts",
            params={"slug": slug, "_fields": "id"},
        )
        if isinstance(body, list) and body and isinstance(body[0], dict) and body[0].get("id"):
            return int(body[0]["id"])
        return None

    async def update_post(self, post_id: int, **fields: Any) -> Dict[str, Any]:
        """Update *fields* (content, title, ...) of an existing post."""
        _, body = await self._request(
            "POST", f"{self.config.api_url}/posts/{post_id}", json_data=fields,
        )
        logger.info("Updated post %d: fields=%s", post_id, list(fields))
        return body if isinstance(body, dict) else {}


# ---------------------------------------------------------------------------
# PublishGateway
# ---------------------------------------------------------------------------


class PublishGateway:
    """Writes mutated content back to WordPress and probes connectivity."""

    def __init__(self, config: PilotConfig, client: Optional[WordPressClient] = None):
        self.config = config
        self.client = client or WordPressClient(config)

    async def publish(self, post_id: int, content: str) -> str:
        """
        Replace the content of post *post_id* and return its canonical link.

        Authentication failures are raised immediately, without retry.
        """
        if not post_id:
            raise CMSNotFoundError("Cannot publish: the post id is unresolved")
        result = await self.client.update_post(post_id, content=content)
        link = result.get("link") or ""
        logger.info("Published post %d -> %s", post_id, link or "(no link returned)")
        return link

    def publish_sync(self, post_id: int, content: str) -> str:
        """Synchronous wrapper for publish()."""
        return _run_sync(self._with_close(self.publish(post_id, content)))

    async def check_connection(self) -> ConnectionResult:
        """
        Probe the public REST root, then an authenticated endpoint.

        Never raises; failures come back as ``ConnectionResult(False, message)``.
        """
        if not self.config.is_configured:
            return ConnectionResult(False, "WordPress URL, user and application password are required.")

        try:
            await self.client._request(
                "GET", f"{self.config.base_url}/", authenticated=False, max_retries=1,
            )
        except CMSNotFoundError:
            return ConnectionResult(False, "WP REST API not found on site.")
        except ConnectivityError:
            return ConnectionResult(False, "Site unreachable. Check URL.")
        except CMSError as exc:
            # The root may answer non-2xx and still be usable; the next probe decides.
            logger.debug("REST root answered HTTP %d", exc.status_code)

        try:
            await self.client._request("GET", f"{self.config.api_url}/users/me", max_retries=0)
        except CMSAuthenticationError:
            return ConnectionResult(False, "Authentication failed. Check username/application password.")
        except CMSError as exc:
            return ConnectionResult(False, f"Server error: {exc.status_code}")
        except ConnectivityError:
            return ConnectionResult(False, connectivity_guidance(self.config.site_url, self.config.origin))

        return ConnectionResult(True, "Connection successful.")

    def check_connection_sync(self) -> ConnectionResult:
        """Synchronous wrapper for check_connection()."""
        return _run_sync(self._with_close(self.check_connection()))

    async def _with_close(self, coro):
        try:
            return await coro
        finally:
            await self.client.close()
