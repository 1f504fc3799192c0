"""Tests for the Kubernetes REST client.

The tests mock the aiohttp session rather than running an API server.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from src.vcluster.api.client import (
    ClientConfig,
    KubernetesClient,
    ResourcePath,
    RESTMapper,
)
from src.vcluster.api.exceptions import (
    APIError,
    ConfigurationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    ServerError,
)


def mock_response(status=200, json_body=None, text=""):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=json_body)
    response.text = AsyncMock(return_value=text)
    return response


def client_with_response(response):
    client = KubernetesClient(ClientConfig(host="https://api.example.com", token="tok"))
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    session.request = MagicMock()
    session.request.return_value.__aenter__ = AsyncMock(return_value=response)
    session.request.return_value.__aexit__ = AsyncMock(return_value=None)
    client._session = session
    return client, session


class TestRESTMapping:
    """Test kind to path resolution."""

    def test_core_namespaced(self):
        assert ResourcePath("v1", "services").url("default", "api") == "/api/v1/namespaces/default/services/api"

    def test_core_all_namespaces(self):
        assert ResourcePath("v1", "pods").url() == "/api/v1/pods"

    def test_group_cluster_scoped_ignores_namespace(self):
        path = ResourcePath("storage.k8s.io/v1", "storageclasses", namespaced=False)

        assert path.url("default", "fast") == "/apis/storage.k8s.io/v1/storageclasses/fast"

    def test_unknown_kind(self):
        mapper = RESTMapper()

        with pytest.raises(ConfigurationError) as exc_info:
            mapper.resource_for("gadgets")

        assert exc_info.value.details["kind"] == "gadgets"
        assert "services" in mapper.kinds
        assert mapper.is_namespaced("nodes") is False


class TestClientConfig:
    """Test connection settings."""

    def test_from_values_strips_trailing_slash(self):
        config = ClientConfig.from_values("https://host:6443/", token="t", verify_ssl=False)

        assert config.host == "https://host:6443"
        assert config.token == "t"
        assert config.verify_ssl is False

    def test_in_cluster_without_token(self, tmp_path):
        with patch("src.vcluster.api.client.SERVICE_ACCOUNT_DIR", str(tmp_path)):
            with pytest.raises(ConfigurationError):
                ClientConfig.from_values("")

    def test_in_cluster(self, tmp_path):
        (tmp_path / "token").write_text("sa-token\n")

        with patch("src.vcluster.api.client.SERVICE_ACCOUNT_DIR", str(tmp_path)):
            config = ClientConfig.in_cluster()

        assert config.token == "sa-token"
        assert config.host == "https://kubernetes.default.svc"
        assert config.ca_file is None

    def test_client_requires_host(self):
        with pytest.raises(ConfigurationError):
            KubernetesClient(ClientConfig(host=""))


class TestErrorMapping:
    """Test status code to exception mapping."""

    @pytest.mark.parametrize(
        "status,expected",
        [
            (404, NotFoundError),
            (409, ConflictError),
            (500, ServerError),
            (503, ServerError),
        ],
    )
    def test_typed_errors(self, status, expected):
        error = KubernetesClient._error_for(status, "body", "/api/v1/pods", "GET")

        assert isinstance(error, expected)
        assert error.endpoint == "/api/v1/pods"

    def test_other_status(self):
        error = KubernetesClient._error_for(403, "forbidden", "/api/v1/pods", "GET")

        assert type(error) is APIError
        assert error.status_code == 403
        assert error.recoverable is False

    def test_server_errors_are_recoverable(self):
        assert KubernetesClient._error_for(502, "", "/", "GET").recoverable is True


class TestRequests:
    """Test the IClient methods against a mocked session."""

    @pytest.mark.asyncio
    async def test_get(self):
        response = mock_response(json_body={"metadata": {"name": "api"}})
        client, session = client_with_response(response)

        result = await client.get("services", "default", "api")

        assert result == {"metadata": {"name": "api"}}
        args, kwargs = session.request.call_args
        assert args == ("GET", "/api/v1/namespaces/default/services/api")
        assert kwargs["headers"]["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_list_with_selector(self):
        response = mock_response(json_body={"items": [{"metadata": {"name": "a"}}]})
        client, session = client_with_response(response)

        result = await client.list("statefulsets", label_selector="app=vcluster")

        assert result == [{"metadata": {"name": "a"}}]
        args, kwargs = session.request.call_args
        assert args == ("GET", "/apis/apps/v1/statefulsets")
        assert kwargs["params"] == {"labelSelector": "app=vcluster"}

    @pytest.mark.asyncio
    async def test_list_scoped_to_client_namespace(self):
        response = mock_response(json_body={"items": None})
        client, session = client_with_response(response)
        client.namespace = "team-a"

        assert await client.list("configmaps") == []
        assert session.request.call_args.args[1] == "/api/v1/namespaces/team-a/configmaps"

    @pytest.mark.asyncio
    async def test_create_and_update(self):
        obj = {"metadata": {"name": "cm", "namespace": "default"}, "data": {}}
        client, session = client_with_response(mock_response(json_body=obj))

        await client.create("configmaps", obj)
        assert session.request.call_args.args == ("POST", "/api/v1/namespaces/default/configmaps")
        assert session.request.call_args.kwargs["json"] == obj

        await client.update("configmaps", obj)
        assert session.request.call_args.args == ("PUT", "/api/v1/namespaces/default/configmaps/cm")

    @pytest.mark.asyncio
    async def test_delete_no_content(self):
        client, session = client_with_response(mock_response(status=204))

        assert await client.delete("nodes", "", "n1") is None
        assert session.request.call_args.args == ("DELETE", "/api/v1/nodes/n1")

    @pytest.mark.asyncio
    async def test_not_found(self):
        client, _ = client_with_response(mock_response(status=404, text="not found"))

        with pytest.raises(NotFoundError) as exc_info:
            await client.get("pods", "default", "missing")

        assert exc_info.value.response_body == "not found"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        client, session = client_with_response(mock_response())
        session.request.side_effect = aiohttp.ClientConnectionError("refused")

        with pytest.raises(NetworkError) as exc_info:
            await client.get("pods", "default", "p")

        assert exc_info.value.recoverable is True

    @pytest.mark.asyncio
    async def test_context_manager_closes_session(self):
        client, session = client_with_response(mock_response())

        async with client:
            pass

        session.close.assert_awaited_once()
        assert client._session is None
