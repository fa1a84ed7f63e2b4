"""
Tests for the CDB REST gateway backend.
"""
import json

import httpx
import pytest

from oradb_operator.config.settings import Settings
from oradb_operator.exceptions import ConfigurationError, ConflictError, PermanentError, TransientError
from oradb_operator.models.action import CorrectiveAction, DeleteMode, PdbActionKind
from oradb_operator.models.lifecycle import LifecycleState
from oradb_operator.models.resource import ContainerDatabase, PluggableDatabase
from oradb_operator.services.pdb_gateway import (
    API_PATH,
    GatewayClientConfig,
    PdbGatewayClient,
    classify_status,
    parse_open_mode,
)

from tests.fakes import FakeResourceStore, pdb_body

BASE_URL = f"https://cdb1-ords.default:8888{API_PATH}"


class Gateway:
    """Records requests and answers from a per-test handler."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def routes(self):
        return [(r.method, r.url.path[len(API_PATH):]) for r in self.requests]


def status_response(open_mode="READ WRITE", code=200):
    return httpx.Response(code, json={"open_mode": open_mode, "total_size": 1024})


@pytest.fixture
def secrets():
    store = FakeResourceStore()
    store.put_secret("default", "pdb-admin", {"username": b"pdbadmin", "password": b"Secret#1"})
    return store


def make_client(handler, secrets):
    gateway = Gateway(handler)
    config = GatewayClientConfig(base_url=BASE_URL, username="sql_admin", password="pw", timeout_seconds=5)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(gateway), base_url=BASE_URL)
    return PdbGatewayClient(config, secrets, http_client=http_client), gateway


def pdb(action="Create", **spec):
    return PluggableDatabase.model_validate(pdb_body("pdb1", action, **spec))


class TestClassification:
    @pytest.mark.parametrize("code,expected", [
        (409, ConflictError),
        (408, TransientError),
        (429, TransientError),
        (502, TransientError),
        (400, PermanentError),
        (401, PermanentError),
        (404, PermanentError),
    ])
    def test_error_statuses(self, code, expected):
        error = classify_status("create_pdb", httpx.Response(code, text="nope"))

        assert isinstance(error, expected)
        assert error.status == code

    def test_success_is_not_an_error(self):
        assert classify_status("create_pdb", httpx.Response(201)) is None


@pytest.mark.parametrize("value,expected", [
    ("READ WRITE", LifecycleState.OPEN),
    ("read only", LifecycleState.READ_ONLY),
    ("MOUNTED", LifecycleState.MOUNTED),
    (None, LifecycleState.UNKNOWN),
    ("MIGRATE", LifecycleState.UNKNOWN),
])
def test_parse_open_mode(value, expected):
    assert parse_open_mode(value) == expected


class TestConfig:
    def cdb(self, **spec):
        body = {
            "metadata": {"name": "cdb1", "namespace": "default"},
            "spec": {
                "webServerUser": {"secret": {"secretName": "cdb-web", "key": "user"}},
                "webServerPwd": {"secret": {"secretName": "cdb-web", "key": "password"}},
                **spec,
            },
        }
        return ContainerDatabase.model_validate(body)

    @pytest.mark.asyncio
    async def test_from_cdb_reads_credentials(self):
        store = FakeResourceStore()
        store.put_secret("default", "cdb-web", {"user": b"sql_admin\n", "password": b"pw"})

        config = await GatewayClientConfig.from_cdb(self.cdb(ordsPort=8443), store, Settings())

        assert config.base_url == f"https://cdb1-ords.default:8443{API_PATH}"
        assert config.username == "sql_admin"
        assert config.password == "pw"
        assert config.tls_key is None

    @pytest.mark.asyncio
    async def test_missing_credentials_is_configuration_error(self):
        cdb = ContainerDatabase.model_validate({"metadata": {"name": "cdb1"}, "spec": {}})

        with pytest.raises(ConfigurationError):
            await GatewayClientConfig.from_cdb(cdb, FakeResourceStore(), Settings())

    @pytest.mark.asyncio
    async def test_missing_secret_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            await GatewayClientConfig.from_cdb(self.cdb(), FakeResourceStore(), Settings())


class TestObserve:
    @pytest.mark.asyncio
    async def test_open_pdb(self, secrets):
        client, gateway = make_client(lambda request: status_response(), secrets)

        observation = await client.observe(pdb())

        assert observation.identity == "pdb1"
        assert observation.lifecycle_state == LifecycleState.OPEN
        assert observation.attributes == {"total_size": 1024}
        assert gateway.routes() == [("GET", "pdb1/status")]

    @pytest.mark.asyncio
    async def test_missing_pdb_is_absent(self, secrets):
        client, _ = make_client(lambda request: httpx.Response(404), secrets)

        assert await client.observe(pdb()) is None

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, secrets):
        client, _ = make_client(lambda request: httpx.Response(503), secrets)

        with pytest.raises(TransientError):
            await client.observe(pdb())

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, secrets):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = make_client(refuse, secrets)

        with pytest.raises(TransientError):
            await client.observe(pdb())

    @pytest.mark.asyncio
    async def test_list_matching_finds_by_name(self, secrets):
        items = {"items": [
            {"pdb_name": "other", "open_mode": "READ WRITE"},
            {"pdb_name": "pdb1", "open_mode": "MOUNTED"},
        ]}
        client, _ = make_client(lambda request: httpx.Response(200, json=items), secrets)

        observation = await client.list_matching(pdb())

        assert observation.lifecycle_state == LifecycleState.MOUNTED
        assert observation.source == "list"


class TestDispatch:
    @pytest.mark.asyncio
    async def test_create_sends_admin_credentials(self, secrets):
        client, gateway = make_client(lambda request: httpx.Response(201), secrets)

        result = await client.dispatch(
            pdb(), CorrectiveAction.pdb(PdbActionKind.CREATE, file_name_conversions="NONE", unlimited_storage=True),
        )

        assert result.identity == "pdb1"
        body = json.loads(gateway.requests[0].content)
        assert gateway.routes() == [("POST", "")]
        assert body["method"] == "CREATE"
        assert body["pdb_name"] == "pdb1"
        assert body["adminName"] == "pdbadmin"
        assert body["adminPwd"] == "Secret#1"
        assert body["fileNameConversions"] == "NONE"
        assert body["totalSize"] == "UNLIMITED"

    @pytest.mark.asyncio
    async def test_clone_posts_to_source(self, secrets):
        client, gateway = make_client(lambda request: httpx.Response(201), secrets)

        await client.dispatch(pdb("Clone"), CorrectiveAction.pdb(PdbActionKind.CLONE, src_pdb_name="seed"))

        body = json.loads(gateway.requests[0].content)
        assert gateway.routes() == [("POST", "seed/")]
        assert body == {"method": "CLONE", "clonePDBName": "pdb1"}

    @pytest.mark.asyncio
    async def test_clone_without_source_is_permanent(self, secrets):
        client, gateway = make_client(lambda request: httpx.Response(201), secrets)

        with pytest.raises(PermanentError):
            await client.dispatch(pdb("Clone"), CorrectiveAction.pdb(PdbActionKind.CLONE))
        assert gateway.requests == []

    @pytest.mark.asyncio
    async def test_unplug_reports_unplugged(self, secrets):
        client, gateway = make_client(lambda request: httpx.Response(200), secrets)

        result = await client.dispatch(
            pdb("Unplug"), CorrectiveAction.pdb(PdbActionKind.UNPLUG, xml_file_name="/tmp/pdb1.xml"),
        )

        assert result.lifecycle_state == LifecycleState.UNPLUGGED
        assert gateway.routes() == [("POST", "pdb1/")]

    @pytest.mark.asyncio
    async def test_modify_rejects_unknown_state(self, secrets):
        client, _ = make_client(lambda request: httpx.Response(200), secrets)

        with pytest.raises(PermanentError):
            await client.dispatch(pdb("Modify"), CorrectiveAction.pdb(PdbActionKind.MODIFY, state="RESTART"))

    @pytest.mark.asyncio
    async def test_delete_closes_open_pdb_first(self, secrets):
        def handler(request):
            if request.method == "GET":
                return status_response("READ WRITE")
            return httpx.Response(200)

        client, gateway = make_client(handler, secrets)

        result = await client.dispatch(pdb(), CorrectiveAction.delete(DeleteMode.HARD))

        assert result.lifecycle_state == LifecycleState.TERMINATED
        assert gateway.routes() == [("GET", "pdb1/status"), ("POST", "pdb1/status"), ("DELETE", "pdb1/")]
        assert json.loads(gateway.requests[1].content) == {"state": "CLOSE", "modifyOption": "IMMEDIATE"}
        assert gateway.requests[2].url.params["action"] == "INCLUDING"

    @pytest.mark.asyncio
    async def test_delete_mounted_pdb_skips_close(self, secrets):
        def handler(request):
            if request.method == "GET":
                return status_response("MOUNTED")
            return httpx.Response(200)

        client, gateway = make_client(handler, secrets)

        await client.dispatch(pdb(dropAction="KEEP"), CorrectiveAction.delete(DeleteMode.HARD))

        assert gateway.routes() == [("GET", "pdb1/status"), ("DELETE", "pdb1/")]
        assert gateway.requests[1].url.params["action"] == "KEEP"

    @pytest.mark.asyncio
    async def test_delete_missing_pdb_is_permanent(self, secrets):
        client, _ = make_client(lambda request: httpx.Response(404), secrets)

        with pytest.raises(PermanentError) as exc_info:
            await client.dispatch(pdb(), CorrectiveAction.delete(DeleteMode.HARD))

        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_conflict_is_classified(self, secrets):
        client, _ = make_client(lambda request: httpx.Response(409, text="busy"), secrets)

        with pytest.raises(ConflictError):
            await client.dispatch(pdb(), CorrectiveAction.pdb(PdbActionKind.CREATE))

    @pytest.mark.asyncio
    async def test_wallet_is_unsupported(self, secrets):
        client, _ = make_client(lambda request: httpx.Response(200), secrets)

        with pytest.raises(PermanentError):
            await client.download_wallet(pdb(), "pw")
