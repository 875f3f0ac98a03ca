"""Tests for data source reuse, renaming and creation."""
from __future__ import annotations

import json

import httpx
import pytest
import respx

from grafana_provisioner.client import GrafanaClient
from grafana_provisioner.datasources import (
    DataSourceLookup,
    find_same_connection,
    reconcile_datasource,
    reconcile_datasources,
    unique_name,
)
from grafana_provisioner.exceptions import ConfigurationError, GrafanaAPIError
from grafana_provisioner.models import POSTGRES_TYPE, DataSourceRecord, DataSourceSpec, ResolvedDataSource

from conftest import API, make_settings


def _spec(name: str = "y", url: str = "h:5432", database: str = "d") -> DataSourceSpec:
    return DataSourceSpec(name=name, url=url, database=database, user="u", password="p")


def _record(id: int, name: str, url: str = "h:5432", database: str = "d", type: str = POSTGRES_TYPE) -> DataSourceRecord:
    return DataSourceRecord(id=id, uid=f"uid-{id}", name=name, type=type, url=url, database=database)


def _created(id: int, name: str) -> httpx.Response:
    return httpx.Response(200, json={"datasource": {"id": id, "uid": f"uid-{id}", "name": name}})


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def test_connection_identity_ignores_name():
    existing = [_record(1, "x")]
    assert find_same_connection(_spec(name="y"), existing) is existing[0]


@pytest.mark.parametrize(
    "record",
    [
        _record(1, "y", url="other:5432"),
        _record(1, "y", database="other"),
        _record(1, "y", type="postgres"),
    ],
)
def test_connection_identity_needs_all_three_fields(record):
    assert find_same_connection(_spec(), [record]) is None


def test_unique_name_free():
    assert unique_name("m", [_record(1, "other")]) == "m"


def test_unique_name_skips_taken_suffixes():
    existing = [_record(1, "m"), _record(2, "m_1")]
    assert unique_name("m", existing) == "m_2"


def test_unique_name_fills_first_gap():
    existing = [_record(1, "m"), _record(2, "m_2")]
    assert unique_name("m", existing) == "m_1"


# ---------------------------------------------------------------------------
# reconcile_datasource
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_existing_connection_is_reused_without_create():
    existing = [_record(1, "x")]
    with respx.mock(assert_all_called=False) as router:
        create = router.post(f"{API}/datasources").mock(return_value=_created(9, "y"))
        async with GrafanaClient(make_settings()) as client:
            resolved = await reconcile_datasource(client, _spec(name="y"), existing)
    assert resolved == ResolvedDataSource(requested_name="y", name="x", id=1, uid="uid-1")
    assert not create.called


@respx.mock
@pytest.mark.asyncio
async def test_name_collision_with_other_connection_gets_suffix():
    create = respx.post(f"{API}/datasources").mock(return_value=_created(3, "m_2"))
    existing = [_record(1, "m", url="a:5432"), _record(2, "m_1", url="b:5432")]
    async with GrafanaClient(make_settings()) as client:
        resolved = await reconcile_datasource(client, _spec(name="m", url="c:5432"), existing)
    assert json.loads(create.calls.last.request.content)["name"] == "m_2"
    assert resolved.name == "m_2"
    assert resolved.uid == "uid-3"
    assert resolved.created is True
    # The working view now includes the new record.
    assert existing[-1].name == "m_2"
    assert existing[-1].url == "c:5432"


@respx.mock
@pytest.mark.asyncio
async def test_conflict_requeries_and_reuses_record():
    respx.post(f"{API}/datasources").mock(return_value=httpx.Response(409, json={"message": "exists"}))
    respx.get(f"{API}/datasources").mock(
        return_value=httpx.Response(200, json=[{
            "id": 4, "uid": "raced", "name": "y", "type": POSTGRES_TYPE, "url": "h:5432", "database": "d",
        }])
    )
    existing: list[DataSourceRecord] = []
    async with GrafanaClient(make_settings()) as client:
        resolved = await reconcile_datasource(client, _spec(name="y"), existing)
    assert resolved.uid == "raced"
    assert resolved.created is False
    assert [r.uid for r in existing] == ["raced"]


@respx.mock
@pytest.mark.asyncio
async def test_conflict_without_visible_record_is_not_fatal():
    respx.post(f"{API}/datasources").mock(return_value=httpx.Response(409, json={"message": "exists"}))
    respx.get(f"{API}/datasources").mock(return_value=httpx.Response(200, json=[]))
    async with GrafanaClient(make_settings()) as client:
        resolved = await reconcile_datasource(client, _spec(name="y"), [])
    assert resolved.name == "y"
    assert resolved.uid is None


@respx.mock
@pytest.mark.asyncio
async def test_conflict_never_binds_to_other_connection_with_same_name():
    respx.post(f"{API}/datasources").mock(return_value=httpx.Response(409, json={"message": "exists"}))
    respx.get(f"{API}/datasources").mock(
        return_value=httpx.Response(200, json=[{
            "id": 7, "uid": "OTHER-DB", "name": "y", "type": POSTGRES_TYPE,
            "url": "elsewhere:5432", "database": "billing",
        }])
    )
    async with GrafanaClient(make_settings()) as client:
        resolved = await reconcile_datasource(client, _spec(name="y", database="orders"), [])
    assert resolved == ResolvedDataSource(requested_name="y", name="y")
    assert resolved.uid is None


@respx.mock
@pytest.mark.asyncio
async def test_other_errors_are_fatal():
    respx.post(f"{API}/datasources").mock(return_value=httpx.Response(400, json={"message": "bad"}))
    async with GrafanaClient(make_settings()) as client:
        with pytest.raises(GrafanaAPIError) as exc_info:
            await reconcile_datasource(client, _spec(), [])
    assert exc_info.value.status_code == 400


# ---------------------------------------------------------------------------
# reconcile_datasources / DataSourceLookup
# ---------------------------------------------------------------------------

@respx.mock
@pytest.mark.asyncio
async def test_same_run_datasources_see_each_other():
    respx.get(f"{API}/datasources").mock(return_value=httpx.Response(200, json=[]))
    create = respx.post(f"{API}/datasources").mock(side_effect=[_created(1, "a"), _created(2, "a_1")])
    specs = [
        _spec(name="a", url="h1:5432"),
        _spec(name="alias", url="h1:5432"),  # same connection as "a"
        _spec(name="a", url="h2:5432"),      # same name, other connection
    ]
    async with GrafanaClient(make_settings()) as client:
        lookup = await reconcile_datasources(client, specs)
    assert create.call_count == 2
    assert lookup.uid_for("alias") == "uid-1"
    assert [json.loads(c.request.content)["name"] for c in create.calls] == ["a", "a_1"]


def test_lookup_prefers_configured_names():
    lookup = DataSourceLookup(
        [ResolvedDataSource(requested_name="pg", name="pg_1", id=2, uid="configured")],
        [_record(1, "pg")],
    )
    assert lookup.uid_for("pg") == "configured"


def test_lookup_falls_back_to_registered():
    lookup = DataSourceLookup([], [_record(5, "legacy")])
    assert "legacy" in lookup
    assert lookup.uid_for("legacy") == "uid-5"


def test_lookup_unknown_name_is_configuration_error():
    lookup = DataSourceLookup([], [])
    with pytest.raises(ConfigurationError, match="'missing'"):
        lookup.uid_for("missing")


def test_lookup_unknown_uid_is_configuration_error():
    lookup = DataSourceLookup([ResolvedDataSource(requested_name="pg", name="pg")])
    with pytest.raises(ConfigurationError, match="UID could not be determined"):
        lookup.uid_for("pg")
