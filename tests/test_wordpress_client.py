"""Tests for the WordPress REST client and publish gateway."""

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from amzpilot.config import PilotConfig
from amzpilot.errors import (
    CMSAuthenticationError,
    CMSNotFoundError,
    CMSServerError,
    ConfigError,
    ConnectivityError,
)
from amzpilot.wordpress_client import ConnectionResult, PublishGateway, WordPressClient


@pytest.fixture
def no_sleep():
    with patch("amzpilot.wordpress_client.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


# ===================================================================
# WordPressClient._request
# ===================================================================

@pytest.mark.unit
class TestRequest:

    @pytest.mark.asyncio
    async def test_sends_basic_auth(self, pilot_config, make_session, mock_aiohttp_response):
        session = make_session(mock_aiohttp_response(json_data={"id": 1}))
        client = WordPressClient(pilot_config, session=session)
        status, body = await client._request("GET", "https://testsite.com/wp-json/wp/v2/posts/1")
        assert (status, body) == (200, {"id": 1})
        headers = session.request.call_args.kwargs["headers"]
        assert headers["Authorization"] == pilot_config.auth_header

    @pytest.mark.asyncio
    async def test_unauthenticated_omits_header(self, pilot_config, make_session, mock_aiohttp_response):
        session = make_session(mock_aiohttp_response(json_data={}))
        client = WordPressClient(pilot_config, session=session)
        await client._request("GET", "https://testsite.com/wp-json/", authenticated=False)
        assert "Authorization" not in session.request.call_args.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_requires_credentials(self, tmp_path, make_session):
        config = PilotConfig(wp_url="testsite.com", cache_path=tmp_path / "c.json")
        session = make_session()
        with pytest.raises(ConfigError):
            await WordPressClient(config, session=session)._request("GET", "https://x")
        session.request.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_failure_not_retried(self, pilot_config, make_session, mock_aiohttp_response,
                                            no_sleep, status):
        session = make_session(
            mock_aiohttp_response(status=status, json_data={"code": "rest_forbidden"}),
            mock_aiohttp_response(json_data={}),
        )
        with pytest.raises(CMSAuthenticationError) as exc_info:
            await WordPressClient(pilot_config, session=session)._request("GET", "https://x")
        assert exc_info.value.status_code == status
        assert session.request.call_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_found(self, pilot_config, make_session, mock_aiohttp_response):
        session = make_session(mock_aiohttp_response(status=404, json_data={"code": "rest_post_invalid_id"}))
        with pytest.raises(CMSNotFoundError):
            await WordPressClient(pilot_config, session=session)._request("GET", "https://x")

    @pytest.mark.asyncio
    async def test_transient_status_retried(self, pilot_config, make_session, mock_aiohttp_response, no_sleep):
        session = make_session(
            mock_aiohttp_response(status=503),
            mock_aiohttp_response(status=502),
            mock_aiohttp_response(json_data={"ok": True}),
        )
        _, body = await WordPressClient(pilot_config, session=session)._request("GET", "https://x")
        assert body == {"ok": True}
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_server_error_message(self, pilot_config, make_session, mock_aiohttp_response):
        session = make_session(mock_aiohttp_response(status=500, json_data={"message": "Database down"}))
        with pytest.raises(CMSServerError, match="Database down") as exc_info:
            await WordPressClient(pilot_config, session=session)._request("GET", "https://x")
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_network_error_becomes_connectivity_error(self, pilot_config, make_session, no_sleep):
        session = make_session(*[aiohttp.ClientConnectionError("refused")] * 3)
        with pytest.raises(ConnectivityError) as exc_info:
            await WordPressClient(pilot_config, session=session)._request("GET", "https://x")
        assert exc_info.value.origin == "https://pilot.local"
        assert "https://pilot.local" in str(exc_info.value)
        assert session.request.call_count == 3

    @pytest.mark.asyncio
    async def test_non_json_body_falls_back_to_text(self, pilot_config, make_session, mock_aiohttp_response):
        resp = mock_aiohttp_response(json_data=ValueError("not json"), text="<html>ok</html>")
        session = make_session(resp)
        _, body = await WordPressClient(pilot_config, session=session)._request("GET", "https://x")
        assert body == "<html>ok</html>"


# ===================================================================
# Post endpoints
# ===================================================================

@pytest.mark.unit
class TestPostEndpoints:

    @pytest.mark.asyncio
    async def test_get_post_uses_edit_context(self, pilot_config, make_session, mock_aiohttp_response,
                                              sample_wp_post):
        session = make_session(mock_aiohttp_response(json_data=sample_wp_post))
        post = await WordPressClient(pilot_config, session=session).get_post(321)
        assert post["id"] == 321
        args, kwargs = session.request.call_args
        assert args[1] == "https://testsite.com/wp-json/wp/v2/posts/321"
        assert kwargs["params"] == {"context": "edit", "_embed": "wp:featuredmedia"}

    @pytest.mark.asyncio
    async def test_find_post_id_by_slug(self, pilot_config, make_session, mock_aiohttp_response):
        session = make_session(mock_aiohttp_response(json_data=[{"id": 77}]))
        client = WordPressClient(pilot_config, session=session)
        assert await client.find_post_id_by_slug("best-kettles") == 77
        assert session.request.call_args.kwargs["params"]["slug"] == "best-kettles"

    @pytest.mark.asyncio
    async def test_find_post_id_by_slug_no_match(self, pilot_config, make_session, mock_aiohttp_response):
        session = make_session(mock_aiohttp_response(json_data=[]))
        client = WordPressClient(pilot_config, session=session)
        assert await client.find_post_id_by_slug("nothing") is None
        assert await client.find_post_id_by_slug("") is None
        assert session.request.call_count == 1

    @pytest.mark.asyncio
    async def test_update_post(self, pilot_config, make_session, mock_aiohttp_response):
        session = make_session(mock_aiohttp_response(json_data={"id": 5, "link": "https://testsite.com/p5/"}))
        result = await WordPressClient(pilot_config, session=session).update_post(5, content="<p>x</p>")
        assert result["link"] == "https://testsite.com/p5/"
        args, kwargs = session.request.call_args
        assert args[0] == "POST"
        assert kwargs["json"] == {"content": "<p>x</p>"}

    @pytest.mark.asyncio
    async def test_close_leaves_injected_session(self, pilot_config, make_session):
        session = make_session()
        async with WordPressClient(pilot_config, session=session):
            pass
        session.close.assert_not_awaited()


# ===================================================================
# PublishGateway
# ===================================================================

@pytest.mark.unit
class TestPublishGateway:

    @pytest.fixture
    def client(self):
        client = MagicMock(spec=WordPressClient)
        client._request = AsyncMock()
        client.update_post = AsyncMock(return_value={"link": "https://testsite.com/post/"})
        client.close = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_publish_returns_link(self, pilot_config, client):
        link = await PublishGateway(pilot_config, client=client).publish(9, "<p>new</p>")
        assert link == "https://testsite.com/post/"
        client.update_post.assert_awaited_once_with(9, content="<p>new</p>")

    @pytest.mark.asyncio
    async def test_publish_without_id(self, pilot_config, client):
        with pytest.raises(CMSNotFoundError):
            await PublishGateway(pilot_config, client=client).publish(0, "<p>new</p>")
        client.update_post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_propagates_auth_error(self, pilot_config, client):
        client.update_post.side_effect = CMSAuthenticationError("denied", status_code=401)
        with pytest.raises(CMSAuthenticationError):
            await PublishGateway(pilot_config, client=client).publish(9, "x")

    def test_publish_sync_closes_client(self, pilot_config, client):
        assert PublishGateway(pilot_config, client=client).publish_sync(9, "x") == "https://testsite.com/post/"
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_check_connection_success(self, pilot_config, client):
        client._request.return_value = (200, {})
        result = await PublishGateway(pilot_config, client=client).check_connection()
        assert result == ConnectionResult(True, "Connection successful.")
        assert bool(result)
        urls = [c.args[1] for c in client._request.await_args_list]
        assert urls == ["https://testsite.com/wp-json/", "https://testsite.com/wp-json/wp/v2/users/me"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first, second, message", [
        (CMSNotFoundError("nf", status_code=404), None, "WP REST API not found on site."),
        (ConnectivityError("down", origin="x"), None, "Site unreachable. Check URL."),
        ((200, {}), CMSAuthenticationError("no", status_code=401),
         "Authentication failed. Check username/application password."),
        ((200, {}), CMSServerError("boom", status_code=500), "Server error: 500"),
        (CMSServerError("odd", status_code=500), CMSServerError("boom", status_code=502), "Server error: 502"),
    ])
    async def test_check_connection_failures(self, pilot_config, client, first, second, message):
        client._request.side_effect = [first, second]
        result = await PublishGateway(pilot_config, client=client).check_connection()
        assert not result
        assert result.message == message

    @pytest.mark.asyncio
    async def test_check_connection_auth_probe_connectivity(self, pilot_config, client):
        client._request.side_effect = [(200, {}), ConnectivityError("down", origin="x")]
        result = await PublishGateway(pilot_config, client=client).check_connection()
        assert not result
        assert "https://pilot.local" in result.message

    @pytest.mark.asyncio
    async def test_check_connection_unconfigured(self, tmp_path, client):
        config = PilotConfig(cache_path=tmp_path / "c.json")
        result = await PublishGateway(config, client=client).check_connection()
        assert not result.success
        client._request.assert_not_awaited()
