"""
Tests for the OCI Database service backend.
"""
import io
import zipfile
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import oci
import pytest

from oradb_operator.exceptions import ConflictError, PermanentError, TransientError, WalletError
from oradb_operator.models.action import CorrectiveAction, DeleteMode
from oradb_operator.models.lifecycle import LifecycleState
from oradb_operator.models.resource import AutonomousDatabase, OCIConfigSpec
from oradb_operator.config.settings import Settings
from oradb_operator.services.oci_database import (
    OWNER_TAG,
    OCIClientConfig,
    OCIDatabaseClient,
    classify_service_error,
    to_attributes,
    unpack_wallet,
)

from tests.fakes import FakeResourceStore, adb_body


def service_error(status, code, message="failed"):
    return oci.exceptions.ServiceError(status, code, {}, message)


def sdk_adb(identity="ocid1.autonomousdatabase.oc1..a", state="AVAILABLE", **attrs):
    return SimpleNamespace(id=identity, lifecycle_state=state, **attrs)


def response(data):
    return SimpleNamespace(data=data)


@pytest.fixture
def sdk():
    return MagicMock(spec=oci.database.DatabaseClient)


@pytest.fixture
def secrets():
    store = FakeResourceStore()
    store.put_secret("default", "admin-password", {"admin-password": b"Welcome_12345#\n"})
    return store


@pytest.fixture
def client(sdk, secrets):
    config = OCIClientConfig(config_file="~/.oci/config", profile="DEFAULT", timeout_seconds=5)
    return OCIDatabaseClient(config, secrets=secrets, client=sdk)


def adb(identity=None, **details):
    body = adb_body(**details)
    body["metadata"]["uid"] = "uid-adb1"
    resource = AutonomousDatabase.model_validate(body)
    resource.status.identity = identity
    return resource


class TestClassification:
    @pytest.mark.parametrize("status,code,expected", [
        (409, "Conflict", ConflictError),
        (400, "IncorrectState", ConflictError),
        (429, "TooManyRequests", TransientError),
        (503, "ServiceUnavailable", TransientError),
        (500, "InternalServerError", TransientError),
        (400, "InvalidParameter", PermanentError),
        (401, "NotAuthenticated", PermanentError),
        (404, "NotAuthorizedOrNotFound", PermanentError),
    ])
    def test_service_errors(self, status, code, expected):
        error = classify_service_error("update", service_error(status, code))

        assert isinstance(error, expected)
        assert error.status == status
        assert error.code == code
        assert error.operation == "update"

    def test_retryable_flag_follows_class(self):
        assert classify_service_error("get", service_error(503, "x")).retryable is True
        assert classify_service_error("get", service_error(400, "x")).retryable is False


class TestConfig:
    def test_resource_override_wins(self):
        settings = Settings(oci_config_file="/etc/oci/config", oci_profile="DEFAULT", oci_region="us-ashburn-1")

        config = OCIClientConfig.from_settings(settings, OCIConfigSpec(profile="TENANT2"))

        assert config.config_file == "/etc/oci/config"
        assert config.profile == "TENANT2"
        assert config.region == "us-ashburn-1"

    def test_defaults_from_settings(self):
        settings = Settings(actuator_timeout_seconds=30)

        config = OCIClientConfig.from_settings(settings)

        assert config.profile == settings.oci_profile
        assert config.timeout_seconds == 30


class TestObserve:
    @pytest.mark.asyncio
    async def test_no_identity_reads_nothing(self, client, sdk):
        assert await client.observe(adb()) is None
        sdk.get_autonomous_database.assert_not_called()

    @pytest.mark.asyncio
    async def test_observation_maps_sdk_attributes(self, client, sdk):
        sdk.get_autonomous_database.return_value = response(sdk_adb(
            state="AVAILABLE", display_name="adb1", cpu_core_count=2, nsg_ids=["nsg1"], subnet_id="subnet1",
        ))

        observation = await client.observe(adb("ocid1.autonomousdatabase.oc1..a"))

        assert observation.lifecycle_state == LifecycleState.AVAILABLE
        assert observation.attributes == {
            "display_name": "adb1",
            "cpu_core_count": 2,
            "nsg_ocids": ["nsg1"],
            "subnet_ocid": "subnet1",
        }

    @pytest.mark.asyncio
    async def test_not_found_is_absent(self, client, sdk):
        sdk.get_autonomous_database.side_effect = service_error(404, "NotAuthorizedOrNotFound")

        assert await client.observe(adb("ocid1.autonomousdatabase.oc1..gone")) is None

    @pytest.mark.asyncio
    async def test_unknown_state_parses(self, client, sdk):
        sdk.get_autonomous_database.return_value = response(sdk_adb(state="SOMETHING_NEW"))

        observation = await client.observe(adb("ocid1.autonomousdatabase.oc1..a"))

        assert observation.lifecycle_state == LifecycleState.UNKNOWN
        assert observation.raw_state == "SOMETHING_NEW"

    @pytest.mark.asyncio
    async def test_transport_failure_is_transient(self, client, sdk):
        sdk.get_autonomous_database.side_effect = oci.exceptions.RequestException("connection reset")

        with pytest.raises(TransientError):
            await client.observe(adb("ocid1.autonomousdatabase.oc1..a"))


class TestListMatching:
    @pytest.mark.asyncio
    async def test_newest_live_owned_match(self, client, sdk, monkeypatch):
        owned = {OWNER_TAG: "uid-adb1"}
        items = [
            sdk_adb("old", "AVAILABLE", freeform_tags=owned, time_created=datetime(2025, 1, 1, tzinfo=timezone.utc)),
            sdk_adb("new", "PROVISIONING", freeform_tags=owned, time_created=datetime(2026, 1, 1, tzinfo=timezone.utc)),
            sdk_adb("dead", "TERMINATED", freeform_tags=owned, time_created=datetime(2026, 6, 1, tzinfo=timezone.utc)),
            sdk_adb("other", "AVAILABLE", time_created=datetime(2026, 3, 1, tzinfo=timezone.utc)),
        ]
        calls = {}

        def list_all(fn, **kwargs):
            calls.update(kwargs)
            return response(items)

        monkeypatch.setattr(oci.pagination, "list_call_get_all_results", list_all)

        observation = await client.list_matching(adb())

        assert observation.identity == "new"
        assert observation.source == "list"
        assert calls == {"compartment_id": "ocid1.compartment.oc1..test", "display_name": "adb1"}

    @pytest.mark.asyncio
    async def test_same_name_database_of_someone_else_is_ignored(self, client, monkeypatch):
        items = [
            sdk_adb("foreign", "AVAILABLE", display_name="adb1", freeform_tags={"team": "billing"}),
            sdk_adb("other-owner", "AVAILABLE", display_name="adb1", freeform_tags={OWNER_TAG: "uid-other"}),
        ]
        monkeypatch.setattr(oci.pagination, "list_call_get_all_results", lambda fn, **kw: response(items))

        assert await client.list_matching(adb()) is None

    @pytest.mark.asyncio
    async def test_identified_resource_matches_by_ocid(self, client, monkeypatch):
        items = [sdk_adb("a", "AVAILABLE"), sdk_adb("b", "STOPPED")]
        monkeypatch.setattr(oci.pagination, "list_call_get_all_results", lambda fn, **kw: response(items))

        observation = await client.list_matching(adb("b"))

        assert observation.lifecycle_state == LifecycleState.STOPPED


class TestDispatch:
    @pytest.mark.asyncio
    async def test_provision_creates_with_secret_password(self, client, sdk):
        sdk.create_autonomous_database.return_value = response(sdk_adb("new", "PROVISIONING", cpu_core_count=1))
        action = CorrectiveAction.provision(
            compartment_ocid="ocid1.compartment.oc1..test", db_name="ADB1", display_name="adb1", cpu_core_count=1,
        )

        result = await client.dispatch(adb(), action)

        details = sdk.create_autonomous_database.call_args.args[0]
        assert isinstance(details, oci.database.models.CreateAutonomousDatabaseDetails)
        assert details.compartment_id == "ocid1.compartment.oc1..test"
        assert details.db_name == "ADB1"
        assert details.admin_password == "Welcome_12345#"
        assert details.freeform_tags == {OWNER_TAG: "uid-adb1"}
        assert result.identity == "new"
        assert result.lifecycle_state == LifecycleState.PROVISIONING

    @pytest.mark.asyncio
    async def test_provision_with_source_clones(self, client, sdk):
        sdk.create_autonomous_database.return_value = response(sdk_adb("clone", "PROVISIONING"))
        action = CorrectiveAction.provision(
            compartment_ocid="ocid1.compartment.oc1..test", db_name="CLONE1", source_id="ocid1.source",
        )

        await client.dispatch(adb(), action)

        details = sdk.create_autonomous_database.call_args.args[0]
        assert isinstance(details, oci.database.models.CreateAutonomousDatabaseCloneDetails)
        assert details.source_id == "ocid1.source"
        assert details.clone_type == "FULL"

    @pytest.mark.asyncio
    async def test_bind_missing_database_is_permanent_not_found(self, client, sdk):
        sdk.get_autonomous_database.side_effect = service_error(404, "NotAuthorizedOrNotFound")

        with pytest.raises(PermanentError) as exc_info:
            await client.dispatch(adb(), CorrectiveAction.bind("ocid1.missing"))

        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_update_maps_attribute_names(self, client, sdk):
        sdk.update_autonomous_database.return_value = response(sdk_adb(state="UPDATING"))

        result = await client.dispatch(
            adb("ocid1.autonomousdatabase.oc1..a"),
            CorrectiveAction.update({"cpu_core_count": 2, "nsg_ocids": ["nsg2"]}),
        )

        identity, details = sdk.update_autonomous_database.call_args.args
        assert identity == "ocid1.autonomousdatabase.oc1..a"
        assert details.cpu_core_count == 2
        assert details.nsg_ids == ["nsg2"]
        assert result.lifecycle_state == LifecycleState.UPDATING

    @pytest.mark.asyncio
    async def test_tag_update_keeps_owner_tag(self, client, sdk):
        sdk.get_autonomous_database.return_value = response(
            sdk_adb(freeform_tags={OWNER_TAG: "uid-adb1", "env": "dev"})
        )
        sdk.update_autonomous_database.return_value = response(sdk_adb(state="UPDATING"))

        await client.dispatch(
            adb("ocid1.autonomousdatabase.oc1..a"),
            CorrectiveAction.update({"freeform_tags": {"env": "prod"}}),
        )

        _, details = sdk.update_autonomous_database.call_args.args
        assert details.freeform_tags == {"env": "prod", OWNER_TAG: "uid-adb1"}

    @pytest.mark.asyncio
    async def test_change_state_stops(self, client, sdk):
        sdk.stop_autonomous_database.return_value = response(sdk_adb(state="STOPPING"))

        await client.dispatch(adb("a"), CorrectiveAction.change_state(LifecycleState.STOPPED))

        sdk.stop_autonomous_database.assert_called_once_with("a")
        sdk.start_autonomous_database.assert_not_called()

    @pytest.mark.asyncio
    async def test_conflicting_update_is_classified(self, client, sdk):
        sdk.update_autonomous_database.side_effect = service_error(409, "IncorrectState")

        with pytest.raises(ConflictError):
            await client.dispatch(adb("a"), CorrectiveAction.update({"cpu_core_count": 2}))

    @pytest.mark.asyncio
    async def test_delete_reports_terminating(self, client, sdk):
        result = await client.dispatch(adb("a"), CorrectiveAction.delete(DeleteMode.HARD))

        sdk.delete_autonomous_database.assert_called_once_with("a")
        assert result.lifecycle_state == LifecycleState.TERMINATING

    @pytest.mark.asyncio
    async def test_mutation_without_identity_is_rejected(self, client, sdk):
        with pytest.raises(PermanentError):
            await client.dispatch(adb(), CorrectiveAction.update({"cpu_core_count": 2}))


def wallet_zip(files):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buffer.getvalue()


class TestWallet:
    def test_unpack_flattens_paths(self):
        content = wallet_zip({"wallet/cwallet.sso": b"sso", "tnsnames.ora": b"tns"})

        assert unpack_wallet(content) == {"cwallet.sso": b"sso", "tnsnames.ora": b"tns"}

    def test_unpack_rejects_garbage(self):
        with pytest.raises(WalletError):
            unpack_wallet(b"not a zip")

    @pytest.mark.asyncio
    async def test_download_streams_wallet(self, client, sdk):
        raw = MagicMock()
        raw.stream.return_value = iter([wallet_zip({"ewallet.p12": b"p12"})])
        sdk.generate_autonomous_database_wallet.return_value = response(SimpleNamespace(raw=raw))

        files = await client.download_wallet(adb("a"), "WalletPass#1")

        assert files == {"ewallet.p12": b"p12"}
        details = sdk.generate_autonomous_database_wallet.call_args.args[1]
        assert details.password == "WalletPass#1"


def test_to_attributes_skips_unset():
    assert to_attributes(sdk_adb(display_name="x")) == {"display_name": "x"}


def test_to_attributes_hides_owner_tag():
    attributes = to_attributes(sdk_adb(freeform_tags={OWNER_TAG: "uid-adb1", "env": "dev"}))

    assert attributes == {"freeform_tags": {"env": "dev"}}
